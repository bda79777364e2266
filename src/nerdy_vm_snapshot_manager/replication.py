from __future__ import annotations

from dataclasses import dataclass, replace

import structlog

from .metadata import BackupMetadataStore
from .models import NetappController
from .netapp import NetappClient
from .remote import ServiceUnavailableError, error_message

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RelationSyncReport:
    removed_stale: int = 0
    stored: int = 0
    failed_controllers: tuple[int, ...] = ()


class RelationSynchronizer:
    def __init__(self, *, netapp: NetappClient, metadata_store: BackupMetadataStore) -> None:
        self.netapp = netapp
        self.metadata_store = metadata_store

    async def sync(self) -> RelationSyncReport:
        controllers = self.netapp.controllers
        removed = self.metadata_store.delete_relations_for_unknown_controllers(controllers)
        if removed:
            logger.warning("stale_relations_removed", count=removed)

        stored = 0
        failed: list[int] = []
        for controller in controllers.values():
            if controller.is_primary:
                continue
            try:
                stored += await self._sync_controller(controller)
            except ServiceUnavailableError as error:
                logger.error("relation_sync_failed", controller_id=controller.id, error=error_message(error))
                failed.append(controller.id)

        return RelationSyncReport(removed_stale=removed, stored=stored, failed_controllers=tuple(failed))

    async def _sync_controller(self, secondary: NetappController) -> int:
        selected = {name.lower() for name in secondary.selected_volumes}
        if not selected:
            return self.metadata_store.replace_snapmirror_relations(
                destination_controller_id=secondary.id,
                relations=[],
            )

        live = await self.netapp.list_snapmirror_relations(secondary.id)
        relations = []
        for relation in live:
            if relation.destination_volume.lower() not in selected:
                continue
            source_controller_id = self._owner_of(relation.source_volume)
            if source_controller_id is None:
                logger.warning(
                    "relation_source_unresolved",
                    relation=relation.uuid,
                    source_volume=relation.source_volume,
                )
                continue
            relations.append(replace(relation, source_controller_id=source_controller_id))

        count = self.metadata_store.replace_snapmirror_relations(
            destination_controller_id=secondary.id,
            relations=relations,
        )
        logger.info("relations_synced", controller_id=secondary.id, count=count)
        return count

    def _owner_of(self, volume_name: str) -> int | None:
        lowered = volume_name.lower()
        for controller in self.netapp.controllers.values():
            if controller.is_primary and any(name.lower() == lowered for name in controller.selected_volumes):
                return controller.id
        return None
