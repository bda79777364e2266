from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from itertools import groupby
from typing import Callable

import structlog

from .metadata import BackupMetadataStore
from .models import BackupRecord, NetappSnapshot, StorageErrorKind
from .netapp import NetappClient
from .remote import ServiceUnavailableError, error_message

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class JanitorReport:
    removed: int = 0
    kept_for_secondary: int = 0
    skipped: int = 0


class SnapshotJanitor:
    def __init__(
        self,
        *,
        netapp: NetappClient,
        metadata_store: BackupMetadataStore,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        self.netapp = netapp
        self.metadata_store = metadata_store
        self._now = now

    async def cleanup_expired(self) -> JanitorReport:
        now = self._now()
        known_controllers = set(self.netapp.controllers)
        relations = {
            (relation.source_controller_id, relation.source_volume.lower()): relation
            for relation in self.metadata_store.list_snapmirror_relations()
            if relation.destination_controller_id in known_controllers
        }
        expired = sorted(self.metadata_store.find_expired_backup_records(now), key=_group_key)

        removed = kept = skipped = 0
        for (job_id, storage_name, snapshot_name, controller_id), _records in groupby(expired, key=_group_key):
            log = logger.bind(job_id=job_id, storage=storage_name, snapshot=snapshot_name)
            if controller_id not in known_controllers:
                log.warning("expired_snapshot_skipped_unknown_controller", controller_id=controller_id)
                skipped += 1
                continue
            try:
                if not await self._delete_on_primary(controller_id, storage_name, snapshot_name):
                    skipped += 1
                    continue

                relation = relations.get((controller_id, storage_name.lower()))
                if relation is not None:
                    secondary = await self.netapp.list_snapshots(
                        relation.destination_controller_id,
                        relation.destination_volume,
                    )
                    if _contains(secondary, snapshot_name):
                        self._mark_primary_gone(
                            job_id=job_id,
                            snapshot_name=snapshot_name,
                            secondary_volume=relation.destination_volume,
                            secondary_controller_id=relation.destination_controller_id,
                            now=now,
                        )
                        log.info("expired_snapshot_kept_on_secondary")
                        kept += 1
                        continue
            except ServiceUnavailableError as error:
                log.error("expired_snapshot_cleanup_failed", error=error_message(error))
                skipped += 1
                continue

            self.metadata_store.delete_job_rows(job_id=job_id, snapshot_name=snapshot_name)
            log.info("expired_snapshot_removed")
            removed += 1

        return JanitorReport(removed=removed, kept_for_secondary=kept, skipped=skipped)

    async def _delete_on_primary(self, controller_id: int, storage_name: str, snapshot_name: str) -> bool:
        result = await self.netapp.delete_snapshot(controller_id, storage_name, snapshot_name)
        if not result.success and result.error_kind not in {
            StorageErrorKind.SNAPSHOT_NOT_FOUND,
            StorageErrorKind.VOLUME_NOT_FOUND,
        }:
            logger.warning("primary_snapshot_delete_failed", snapshot=snapshot_name, error=result.error_message)
            return False

        remaining = await self.netapp.list_snapshots(controller_id, storage_name)
        return not _contains(remaining, snapshot_name)

    def _mark_primary_gone(
        self,
        *,
        job_id: int,
        snapshot_name: str,
        secondary_volume: str,
        secondary_controller_id: int,
        now: datetime,
    ) -> None:
        for row in self.metadata_store.get_netapp_snapshots(job_id):
            if row.snapshot_name != snapshot_name:
                continue
            self.metadata_store.update_netapp_snapshot(
                replace(
                    row,
                    exists_on_primary=False,
                    exists_on_secondary=True,
                    is_replicated=True,
                    secondary_volume=secondary_volume,
                    secondary_controller_id=secondary_controller_id,
                    last_checked=now.isoformat(),
                )
            )

    async def track_snapshots(self) -> int:
        now = self._now()
        known_controllers = set(self.netapp.controllers)
        tracked = {
            (row.job_id, row.snapshot_name.lower()): row for row in self.metadata_store.get_netapp_snapshots()
        }

        touched = 0
        for relation in self.metadata_store.list_snapmirror_relations():
            if (
                relation.source_controller_id not in known_controllers
                or relation.destination_controller_id not in known_controllers
            ):
                logger.warning(
                    "relation_skipped_unknown_controller",
                    relation=relation.uuid,
                    source_controller_id=relation.source_controller_id,
                    destination_controller_id=relation.destination_controller_id,
                )
                continue

            try:
                secondary = await self.netapp.list_snapshots(relation.destination_controller_id, relation.destination_volume)
                primary = await self.netapp.list_snapshots(relation.source_controller_id, relation.source_volume)
            except ServiceUnavailableError as error:
                logger.error("snapshot_tracking_failed", relation=relation.uuid, error=error_message(error))
                continue

            for snapshot_name in secondary:
                job_id = self.metadata_store.find_backup_job_id(
                    storage_name=relation.source_volume,
                    snapshot_name=snapshot_name,
                )
                if job_id is None:
                    continue

                on_primary = _contains(primary, snapshot_name)
                existing = tracked.get((job_id, snapshot_name.lower()))
                if existing is not None:
                    self.metadata_store.update_netapp_snapshot(
                        replace(
                            existing,
                            exists_on_primary=on_primary,
                            exists_on_secondary=True,
                            is_replicated=True,
                            secondary_volume=relation.destination_volume,
                            secondary_controller_id=relation.destination_controller_id,
                            last_checked=now.isoformat(),
                        )
                    )
                else:
                    label = next(
                        (
                            record.label
                            for record in self.metadata_store.get_backup_records(job_id)
                            if record.snapshot_name == snapshot_name
                        ),
                        "not_found",
                    )
                    row = NetappSnapshot(
                        job_id=job_id,
                        snapshot_name=snapshot_name,
                        primary_volume=relation.source_volume,
                        primary_controller_id=relation.source_controller_id,
                        created_at=now.isoformat(),
                        snapmirror_label=label,
                        secondary_volume=relation.destination_volume,
                        secondary_controller_id=relation.destination_controller_id,
                        exists_on_primary=on_primary,
                        exists_on_secondary=True,
                        is_replicated=True,
                        last_checked=now.isoformat(),
                    )
                    row_id = self.metadata_store.add_netapp_snapshot(row)
                    tracked[(job_id, snapshot_name.lower())] = replace(row, id=row_id)
                touched += 1

        return touched


def _group_key(record: BackupRecord) -> tuple[int, str, str, int]:
    return (record.job_id, record.storage_name, record.snapshot_name, record.controller_id)


def _contains(names: list[str], wanted: str) -> bool:
    lowered = wanted.lower()
    return any(name.lower() == lowered for name in names)
