from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import UTC, datetime, timedelta
import time
from typing import Any, Awaitable, Callable, Mapping

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .models import (
    DeleteSnapshotResult,
    FlexCloneResult,
    NetappController,
    SnapMirrorRelation,
    SnapshotResult,
    StorageErrorKind,
    VolumeMountInfo,
)
from .polling import PollOutcome, poll_until
from .remote import ServiceUnavailableError, error_message, raise_for_unavailable, response_json

EXPORT_PATH_ATTEMPTS = 5
EXPORT_POLICY_ATTEMPTS = 3
VOLUME_ONLINE_TIMEOUT_SECONDS = 30.0

logger = structlog.get_logger(__name__)

_LOCK_UNITS: dict[str, Callable[[int], timedelta]] = {
    "Hours": lambda count: timedelta(hours=count),
    "Days": lambda count: timedelta(days=count),
    "Weeks": lambda count: timedelta(weeks=count),
}


class ExportSettingNotAppliedError(RuntimeError):
    """Raised when a volume's NAS setting does not read back as the value just written."""


class NetappClient:
    def __init__(
        self,
        *,
        controllers: Mapping[int, NetappController],
        http_client: httpx.AsyncClient,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.controllers = dict(controllers)
        self.http_client = http_client
        self._now = now
        self._clock = clock
        self._sleep = sleep

    def controller(self, controller_id: int) -> NetappController:
        controller = self.controllers.get(controller_id)
        if controller is None:
            raise KeyError(f"NetApp controller {controller_id} is not configured")
        return controller

    async def _request(
        self,
        controller_id: int,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        controller = self.controller(controller_id)
        url = f"https://{controller.address}/api/{path.lstrip('/')}"
        try:
            response = await self.http_client.request(
                method,
                url,
                params=params,
                json=json,
                auth=(controller.username, controller.password),
            )
        except httpx.HTTPError as error:
            raise ServiceUnavailableError(f"{method} {url} failed: {error_message(error)}") from error
        raise_for_unavailable(response)
        return response

    async def _records(self, controller_id: int, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        response = await self._request(controller_id, "GET", path, params=params)
        records = response_json(response).get("records")
        return records if isinstance(records, list) else []

    # Volumes

    async def lookup_volume(
        self,
        controller_id: int,
        volume_name: str,
        *,
        fields: str | None = None,
    ) -> dict[str, Any] | None:
        params: dict[str, Any] = {"name": volume_name}
        if fields:
            params["fields"] = fields
        records = await self._records(controller_id, "storage/volumes", params)
        return records[0] if records else None

    async def get_volumes_with_mount_info(self, controller_id: int) -> list[VolumeMountInfo]:
        interfaces = await self._records(
            controller_id,
            "network/ip/interfaces",
            {"fields": "ip.address,svm.name,services", "services": "data_nfs"},
        )
        ips_by_svm: dict[str, list[str]] = {}
        for interface in interfaces:
            address = (interface.get("ip") or {}).get("address")
            svm = (interface.get("svm") or {}).get("name")
            if address and svm:
                ips_by_svm.setdefault(svm, []).append(address)

        volumes = await self._records(controller_id, "storage/volumes", {"fields": "name,svm.name"})
        result: list[VolumeMountInfo] = []
        for volume in volumes:
            name = volume.get("name")
            svm = (volume.get("svm") or {}).get("name")
            if not name or not svm or not ips_by_svm.get(svm):
                continue
            result.append(VolumeMountInfo(volume_name=name, svm_name=svm, mount_ips=tuple(ips_by_svm[svm])))
        return result

    async def get_nfs_enabled_ips(self, controller_id: int, svm_name: str) -> list[str]:
        interfaces = await self._records(
            controller_id,
            "network/ip/interfaces",
            {"svm.name": svm_name, "fields": "ip.address,services"},
        )
        addresses: list[str] = []
        for interface in interfaces:
            services = interface.get("services") or []
            address = (interface.get("ip") or {}).get("address")
            if "data_nfs" in services and address:
                addresses.append(address)
        return addresses

    # Snapshots

    async def create_snapshot(
        self,
        controller_id: int,
        volume_name: str,
        *,
        label: str,
        lock: bool = False,
        lock_retention_count: int | None = None,
        lock_retention_unit: str | None = None,
    ) -> SnapshotResult:
        created_at = self._now()
        snapshot_name = build_snapshot_name(label, created_at)
        body: dict[str, Any] = {"name": snapshot_name, "snapmirror_label": label}

        if lock:
            if lock_retention_count is None or not lock_retention_unit:
                return SnapshotResult(
                    success=False,
                    error_message="Snapshot locking requested but no retention count/unit supplied.",
                    error_kind=StorageErrorKind.INVALID_REQUEST,
                )
            delta_factory = _LOCK_UNITS.get(lock_retention_unit)
            if delta_factory is None:
                return SnapshotResult(
                    success=False,
                    error_message=f"Unknown lock retention unit '{lock_retention_unit}'.",
                    error_kind=StorageErrorKind.INVALID_REQUEST,
                )
            expiry = created_at + delta_factory(lock_retention_count)
            if expiry <= created_at:
                return SnapshotResult(
                    success=False,
                    error_message=f"Expiry time '{expiry:%Y-%m-%d %H:%M:%S}' must be in the future.",
                    error_kind=StorageErrorKind.INVALID_REQUEST,
                )
            body["expiry_time"] = expiry.isoformat()
            body["snaplock"] = {"expiry_time": expiry.isoformat()}

        try:
            volume = await self.lookup_volume(controller_id, volume_name)
            if volume is None:
                return SnapshotResult(
                    success=False,
                    error_message=f"Volume '{volume_name}' not found.",
                    error_kind=StorageErrorKind.VOLUME_NOT_FOUND,
                )
            await self._request(controller_id, "POST", f"storage/volumes/{volume['uuid']}/snapshots", json=body)
        except ServiceUnavailableError as error:
            logger.error("storage_snapshot_failed", volume=volume_name, error=error_message(error))
            return SnapshotResult(
                success=False,
                error_message=error_message(error),
                error_kind=StorageErrorKind.REMOTE_ERROR,
            )

        logger.info("storage_snapshot_created", volume=volume_name, snapshot=snapshot_name, locked=lock)
        return SnapshotResult(success=True, snapshot_name=snapshot_name)

    async def list_snapshots(self, controller_id: int, volume_name: str) -> list[str]:
        volume = await self.lookup_volume(controller_id, volume_name)
        if volume is None:
            return []
        records = await self._records(controller_id, f"storage/volumes/{volume['uuid']}/snapshots", {"fields": "name,uuid"})
        return [record["name"] for record in records if record.get("name")]

    async def delete_snapshot(self, controller_id: int, volume_name: str, snapshot_name: str) -> DeleteSnapshotResult:
        try:
            volume = await self.lookup_volume(controller_id, volume_name)
            if volume is None:
                return DeleteSnapshotResult(
                    success=False,
                    error_message=f"Volume '{volume_name}' not found.",
                    error_kind=StorageErrorKind.VOLUME_NOT_FOUND,
                )
            snapshot_uuid = await self._snapshot_uuid(controller_id, volume["uuid"], snapshot_name)
            if snapshot_uuid is None:
                return DeleteSnapshotResult(
                    success=False,
                    error_message=f"Snapshot '{snapshot_name}' not found on volume '{volume_name}'.",
                    error_kind=StorageErrorKind.SNAPSHOT_NOT_FOUND,
                )
            await self._request(controller_id, "DELETE", f"storage/volumes/{volume['uuid']}/snapshots/{snapshot_uuid}")
        except ServiceUnavailableError as error:
            return DeleteSnapshotResult(
                success=False,
                error_message=error_message(error),
                error_kind=StorageErrorKind.REMOTE_ERROR,
            )
        return DeleteSnapshotResult(success=True)

    async def _snapshot_uuid(self, controller_id: int, volume_uuid: str, snapshot_name: str) -> str | None:
        records = await self._records(
            controller_id,
            f"storage/volumes/{volume_uuid}/snapshots",
            {"name": snapshot_name, "fields": "name,uuid"},
        )
        for record in records:
            if record.get("name") == snapshot_name and record.get("uuid"):
                return str(record["uuid"])
        return None

    # Clones and exports

    async def clone_volume_from_snapshot(
        self,
        controller_id: int,
        *,
        volume_name: str,
        snapshot_name: str,
        clone_name: str,
    ) -> FlexCloneResult:
        try:
            volume = await self.lookup_volume(controller_id, volume_name, fields="uuid,svm.name")
            if volume is None:
                return FlexCloneResult(
                    success=False,
                    error_message=f"Volume '{volume_name}' not found.",
                    error_kind=StorageErrorKind.VOLUME_NOT_FOUND,
                )
            snapshot_uuid = await self._snapshot_uuid(controller_id, volume["uuid"], snapshot_name)
            if snapshot_uuid is None:
                return FlexCloneResult(
                    success=False,
                    error_message=f"Snapshot '{snapshot_name}' not found on volume '{volume_name}'.",
                    error_kind=StorageErrorKind.SNAPSHOT_NOT_FOUND,
                )
            response = await self._request(
                controller_id,
                "POST",
                "storage/volumes",
                json={
                    "name": clone_name,
                    "clone": {
                        "parent_volume": {"uuid": volume["uuid"]},
                        "parent_snapshot": {"uuid": snapshot_uuid},
                        "is_flexclone": True,
                    },
                    "svm": {"name": (volume.get("svm") or {}).get("name")},
                },
            )
        except ServiceUnavailableError as error:
            return FlexCloneResult(
                success=False,
                error_message=error_message(error),
                error_kind=StorageErrorKind.REMOTE_ERROR,
            )

        job_uuid = (response_json(response).get("job") or {}).get("uuid")
        logger.info("flexclone_submitted", volume=volume_name, snapshot=snapshot_name, clone=clone_name, job=job_uuid)
        return FlexCloneResult(success=True, clone_volume_name=clone_name, job_uuid=job_uuid)

    async def delete_volume(self, controller_id: int, volume_name: str) -> bool:
        """Unexport and delete a volume; a volume that no longer exists counts as deleted."""
        try:
            volume = await self.lookup_volume(controller_id, volume_name)
            if volume is None:
                logger.info("volume_already_absent", volume=volume_name)
                return True
            volume_uuid = volume["uuid"]

            try:
                await self._request(controller_id, "PATCH", f"storage/volumes/{volume_uuid}", json={"nas": {"path": ""}})
            except ServiceUnavailableError as error:
                logger.warning("volume_unexport_failed", volume=volume_name, error=error_message(error))

            await self._request(controller_id, "DELETE", f"storage/volumes/{volume_uuid}")
        except ServiceUnavailableError as error:
            logger.error("volume_delete_failed", volume=volume_name, error=error_message(error))
            return False

        logger.info("volume_deleted", volume=volume_name)
        return True

    async def copy_export_policy(self, controller_id: int, *, source_volume: str, target_volume: str) -> str:
        source = await self.lookup_volume(controller_id, source_volume, fields="nas.export_policy.name")
        if source is None:
            raise ServiceUnavailableError(f"Volume '{source_volume}' not found.", status_code=404)
        policy_name = ((source.get("nas") or {}).get("export_policy") or {}).get("name")
        if not policy_name:
            raise ServiceUnavailableError(f"Volume '{source_volume}' has no export policy.")

        await self.set_export_policy(controller_id, target_volume, policy_name)
        return policy_name

    async def set_export_policy(self, controller_id: int, volume_name: str, policy_name: str) -> None:
        volume_uuid = await self._wait_for_online_volume(controller_id, volume_name)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(EXPORT_POLICY_ATTEMPTS),
            wait=wait_exponential(multiplier=1, min=1, max=8),
            retry=retry_if_exception_type((ServiceUnavailableError, ExportSettingNotAppliedError)),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                await self._request(
                    controller_id,
                    "PATCH",
                    f"storage/volumes/{volume_uuid}",
                    json={"nas": {"export_policy": {"name": policy_name}}},
                )
                applied = await self._read_nas_field(controller_id, volume_uuid, "export_policy.name")
                if applied != policy_name:
                    raise ExportSettingNotAppliedError(
                        f"export policy on '{volume_name}' reads '{applied}', expected '{policy_name}'"
                    )

    async def set_volume_export_path(self, controller_id: int, volume_name: str, export_path: str) -> None:
        volume = await self.lookup_volume(controller_id, volume_name)
        if volume is None:
            raise ServiceUnavailableError(f"Volume '{volume_name}' not found.", status_code=404)
        volume_uuid = volume["uuid"]

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(EXPORT_PATH_ATTEMPTS),
            wait=wait_exponential(multiplier=1, min=1, max=16),
            retry=retry_if_exception_type((ServiceUnavailableError, ExportSettingNotAppliedError)),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                await self._request(
                    controller_id,
                    "PATCH",
                    f"storage/volumes/{volume_uuid}",
                    json={"nas": {"path": export_path}},
                )
                applied = await self._read_nas_field(controller_id, volume_uuid, "path")
                if applied != export_path:
                    logger.warning(
                        "export_path_not_applied",
                        volume=volume_name,
                        attempt=attempt.retry_state.attempt_number,
                        expected=export_path,
                        actual=applied,
                    )
                    raise ExportSettingNotAppliedError(
                        f"export path on '{volume_name}' reads '{applied}', expected '{export_path}'"
                    )

    async def _read_nas_field(self, controller_id: int, volume_uuid: str, dotted: str) -> str | None:
        response = await self._request(
            controller_id,
            "GET",
            f"storage/volumes/{volume_uuid}",
            params={"fields": f"nas.{dotted}"},
        )
        value: Any = response_json(response).get("nas") or {}
        for part in dotted.split("."):
            value = value.get(part) if isinstance(value, dict) else None
        return value if isinstance(value, str) else None

    async def _wait_for_online_volume(self, controller_id: int, volume_name: str) -> str:
        found: dict[str, str] = {}

        async def _online() -> bool:
            volume = await self.lookup_volume(controller_id, volume_name, fields="uuid,state")
            if volume is None:
                return False
            found["uuid"] = volume["uuid"]
            return str(volume.get("state") or "").lower() == "online"

        outcome = await poll_until(
            _online,
            interval=1.0,
            ceiling=VOLUME_ONLINE_TIMEOUT_SECONDS,
            clock=self._clock,
            sleep=self._sleep,
        )
        if outcome is PollOutcome.TIMED_OUT:
            raise ServiceUnavailableError(
                f"Volume '{volume_name}' did not come online within {VOLUME_ONLINE_TIMEOUT_SECONDS:.0f} seconds."
            )
        return found["uuid"]

    # SnapMirror

    async def trigger_snapmirror_update(self, relation: SnapMirrorRelation) -> None:
        await self._request(
            relation.destination_controller_id,
            "POST",
            f"snapmirror/relationships/{relation.uuid}/transfers",
            json={},
        )
        logger.info("snapmirror_update_triggered", relation=relation.uuid, source_volume=relation.source_volume)

    async def get_snapmirror_relation(self, relation: SnapMirrorRelation) -> SnapMirrorRelation:
        response = await self._request(
            relation.destination_controller_id,
            "GET",
            f"snapmirror/relationships/{relation.uuid}",
        )
        live = parse_snapmirror_relation(
            response_json(response),
            source_controller_id=relation.source_controller_id,
            destination_controller_id=relation.destination_controller_id,
        )
        return replace(
            live,
            source_volume=live.source_volume or relation.source_volume,
            destination_volume=live.destination_volume or relation.destination_volume,
        )

    async def list_snapmirror_relations(self, controller_id: int) -> list[SnapMirrorRelation]:
        records = await self._records(controller_id, "snapmirror/relationships", {"fields": "*"})
        return [
            parse_snapmirror_relation(record, source_controller_id=0, destination_controller_id=controller_id)
            for record in records
        ]


def build_snapshot_name(label: str, created_at: datetime) -> str:
    return f"{label}-{created_at.astimezone(UTC):%Y%m%d%H%M%S}"


def parse_snapmirror_relation(
    record: Mapping[str, Any],
    *,
    source_controller_id: int,
    destination_controller_id: int,
) -> SnapMirrorRelation:
    source = record.get("source") or {}
    destination = record.get("destination") or {}
    policy = record.get("policy") or {}
    transfer = record.get("transfer") or {}

    source_svm, source_volume = _split_path(str(source.get("path") or ""))
    destination_svm, destination_volume = _split_path(str(destination.get("path") or ""))
    return SnapMirrorRelation(
        uuid=str(record.get("uuid") or ""),
        source_volume=source_volume,
        source_controller_id=source_controller_id,
        destination_volume=destination_volume,
        destination_controller_id=destination_controller_id,
        source_svm=(source.get("svm") or {}).get("name") or source_svm,
        destination_svm=(destination.get("svm") or {}).get("name") or destination_svm,
        relationship_type=str(record.get("policy_type") or policy.get("type") or ""),
        policy_name=str(policy.get("name") or ""),
        policy_type=str(policy.get("type") or ""),
        state=str(record.get("state") or ""),
        healthy=bool(record.get("healthy", False)),
        lag_time=str(record.get("lag_time") or ""),
        last_transfer_state=str(transfer.get("state") or ""),
        last_transfer_end_time=str(transfer.get("end_time") or ""),
    )


def _split_path(path: str) -> tuple[str, str]:
    svm, separator, volume = path.partition(":")
    if not separator:
        return "", path
    return svm, volume
