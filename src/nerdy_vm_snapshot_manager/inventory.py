from __future__ import annotations

import asyncio
from dataclasses import dataclass
import time
from typing import Awaitable, Callable, Iterable, Mapping, Protocol

import structlog

from .models import NetappController, ProxmoxCluster, ProxmoxVM
from .netapp import NetappClient
from .proxmox import ProxmoxClient

DEFAULT_CACHE_TTL_SECONDS = 15 * 60
ALL_STORAGES_TOKEN = "__ALL__"

StorageMap = dict[str, list[ProxmoxVM]]

logger = structlog.get_logger(__name__)


class TopologyLoader(Protocol):
    async def load_vms_by_storage(self, cluster: ProxmoxCluster, storages: list[str]) -> StorageMap: ...

    async def load_eligible_storage(self, cluster: ProxmoxCluster, controller_id: int) -> StorageMap: ...


@dataclass(frozen=True)
class CacheEntry:
    data: StorageMap
    last_updated: float
    expires_at: float


class InventoryCache:
    """Per-process cache of cluster topology keyed by cluster, controller and storage filter.

    Concurrent misses on one key share a single upstream load; different keys never
    wait on each other.
    """

    def __init__(
        self,
        *,
        loader: TopologyLoader,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._gates: dict[str, asyncio.Lock] = {}
        self._cluster_keys: dict[int, set[str]] = {}
        self._eligible_keys: dict[tuple[int, int], set[str]] = {}

    async def get_vms_by_storage(
        self,
        cluster: ProxmoxCluster,
        storages: Iterable[str],
        *,
        max_age: float | None = None,
        force_refresh: bool = False,
    ) -> StorageMap:
        _require_cluster(cluster)
        normalized = normalize_storage_filter(storages)
        key = vms_key(cluster.id, normalized)
        return await self._get_or_refresh(
            key,
            cluster_id=cluster.id,
            max_age=max_age,
            force_refresh=force_refresh,
            loader=lambda: self.loader.load_vms_by_storage(cluster, normalized),
        )

    async def get_eligible_storage_with_vms(
        self,
        cluster: ProxmoxCluster,
        controller_id: int,
        storage_filter: Iterable[str] | None = None,
        *,
        max_age: float | None = None,
        force_refresh: bool = False,
    ) -> StorageMap:
        _require_cluster(cluster)
        normalized = normalize_storage_filter(storage_filter or ())
        key = eligible_key(cluster.id, controller_id, normalized)

        async def _load() -> StorageMap:
            if normalized:
                return await self.loader.load_vms_by_storage(cluster, normalized)
            return await self.loader.load_eligible_storage(cluster, controller_id)

        data = await self._get_or_refresh(
            key,
            cluster_id=cluster.id,
            max_age=max_age,
            force_refresh=force_refresh,
            loader=_load,
        )
        self._eligible_keys.setdefault((cluster.id, controller_id), set()).add(key)
        return data

    def invalidate_cluster(self, cluster_id: int) -> None:
        for key in self._cluster_keys.pop(cluster_id, set()):
            self._entries.pop(key, None)

        for pair in [pair for pair in self._eligible_keys if pair[0] == cluster_id]:
            for key in self._eligible_keys.pop(pair):
                self._entries.pop(key, None)

    def invalidate_eligible_for_controller(
        self,
        cluster_id: int,
        controller_id: int,
        storage_filter_token: str | None = None,
    ) -> None:
        keys = self._eligible_keys.get((cluster_id, controller_id))
        if not keys:
            return

        token = (storage_filter_token or "").strip().lower()
        for key in list(keys):
            if token and token not in key.lower():
                continue
            self._entries.pop(key, None)
            keys.discard(key)
            cluster_keys = self._cluster_keys.get(cluster_id)
            if cluster_keys is not None:
                cluster_keys.discard(key)

        if not keys:
            self._eligible_keys.pop((cluster_id, controller_id), None)

    def invalidate_all(self) -> None:
        for cluster_id in list(self._cluster_keys):
            self.invalidate_cluster(cluster_id)
        self._entries.clear()
        self._eligible_keys.clear()

    def cached_keys(self) -> list[str]:
        return sorted(self._entries)

    async def _get_or_refresh(
        self,
        key: str,
        *,
        cluster_id: int,
        max_age: float | None,
        force_refresh: bool,
        loader: Callable[[], Awaitable[StorageMap]],
    ) -> StorageMap:
        if not force_refresh:
            cached = self._fresh_entry(key, max_age)
            if cached is not None:
                logger.debug("inventory_cache_hit", key=key)
                return _copy(cached.data)

        logger.debug("inventory_cache_miss", key=key, force_refresh=force_refresh)
        gate = self._gates.setdefault(key, asyncio.Lock())
        requested_at = self._clock()
        async with gate:
            cached = self._entries.get(key)
            # Someone else refreshed while this caller waited on the gate.
            if cached is not None and self._is_usable(cached, max_age) and (
                not force_refresh or cached.last_updated > requested_at
            ):
                return _copy(cached.data)

            data = await loader()
            now = self._clock()
            self._entries[key] = CacheEntry(data=_copy(data), last_updated=now, expires_at=now + self.ttl_seconds)
            self._cluster_keys.setdefault(cluster_id, set()).add(key)
            return _copy(data)

    def _fresh_entry(self, key: str, max_age: float | None) -> CacheEntry | None:
        cached = self._entries.get(key)
        if cached is None or not self._is_usable(cached, max_age):
            return None
        return cached

    def _is_usable(self, entry: CacheEntry, max_age: float | None) -> bool:
        now = self._clock()
        if entry.expires_at <= now:
            return False
        return max_age is None or entry.last_updated >= now - max_age


class InventoryLoader:
    def __init__(
        self,
        *,
        proxmox: ProxmoxClient,
        netapp: NetappClient,
        controllers: Mapping[int, NetappController],
    ) -> None:
        self.proxmox = proxmox
        self.netapp = netapp
        self.controllers = dict(controllers)

    async def load_vms_by_storage(self, cluster: ProxmoxCluster, storages: list[str]) -> StorageMap:
        return await self.proxmox.get_vms_by_storage(cluster, storages)

    async def load_eligible_storage(self, cluster: ProxmoxCluster, controller_id: int) -> StorageMap:
        controller = self.controllers.get(controller_id)
        if controller is None:
            return {}

        mounted = {name.lower() for name in await self.proxmox.list_mounted_nfs_storages(cluster)}
        selected = {name.lower() for name in controller.selected_volumes}
        volumes = await self.netapp.get_volumes_with_mount_info(controller_id)

        eligible: list[str] = []
        seen: set[str] = set()
        for volume in volumes:
            lowered = volume.volume_name.lower()
            if lowered in seen or lowered not in mounted or lowered not in selected:
                continue
            seen.add(lowered)
            eligible.append(volume.volume_name)

        logger.info("eligible_storage_resolved", cluster_id=cluster.id, controller_id=controller_id, storages=eligible)
        return await self.proxmox.get_vms_by_storage(cluster, eligible)


def normalize_storage_filter(storages: Iterable[str]) -> list[str]:
    unique: dict[str, str] = {}
    for name in storages:
        trimmed = (name or "").strip()
        if trimmed and trimmed.lower() not in unique:
            unique[trimmed.lower()] = trimmed
    return sorted(unique.values(), key=str.lower)


def vms_key(cluster_id: int, normalized: list[str]) -> str:
    return f"px:vms:{cluster_id}:{_filter_token(normalized)}"


def eligible_key(cluster_id: int, controller_id: int, normalized: list[str]) -> str:
    return f"px:elig:{cluster_id}:{controller_id}:{_filter_token(normalized)}"


def _filter_token(normalized: list[str]) -> str:
    return "|".join(name.lower() for name in normalized) if normalized else ALL_STORAGES_TOKEN


def _require_cluster(cluster: ProxmoxCluster) -> None:
    if cluster is None or cluster.id <= 0:
        raise ValueError("Cluster id must be positive.")


def _copy(data: StorageMap) -> StorageMap:
    return {storage: list(vms) for storage, vms in data.items()}
