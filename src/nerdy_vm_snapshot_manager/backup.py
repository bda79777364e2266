from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
import json
import time
from typing import Awaitable, Callable, Mapping
from zoneinfo import ZoneInfo

import structlog

from .inventory import InventoryCache
from .metadata import CANCELLED_MESSAGE, BackupMetadataStore
from .models import (
    JOB_STATUS_CANCELLED,
    JOB_STATUS_CREATING_SNAPSHOTS,
    JOB_STATUS_PAUSED_VMS,
    JOB_STATUS_REPLICATION_COMPLETED,
    JOB_STATUS_SNAPSHOT_CREATED,
    JOB_STATUS_SNAPSHOTS_COMPLETED,
    JOB_STATUS_TRIGGERING_REPLICATION,
    JOB_STATUS_WAITING_REPLICATION,
    JOB_STATUS_WAITING_SNAPSHOTS,
    JOB_TYPE_BACKUP,
    VM_RESULT_SKIPPED,
    VM_RESULT_SUCCESS,
    VM_RESULT_WARNING,
    BackupRecord,
    NetappSnapshot,
    ProxmoxCluster,
    ProxmoxVM,
    SnapMirrorRelation,
)
from .netapp import NetappClient
from .polling import OperationCancelledError, PollOutcome, poll_until
from .proxmox import ProxmoxClient
from .remote import ServiceUnavailableError, error_message

HYPERVISOR_SNAPSHOT_DESCRIPTION = "Backup created by nerdy-vm-snapshot-manager"

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BackupOrchestratorConfig:
    snapshot_task_timeout_seconds: float = 20 * 60
    replication_poll_interval_seconds: float = 10
    replication_timeout_seconds: float = 120 * 60
    timezone: str = "UTC"


@dataclass(frozen=True)
class BackupRequest:
    storage_name: str
    label: str
    cluster_id: int
    controller_id: int
    retention_count: int
    retention_unit: str
    is_application_aware: bool = False
    enable_io_freeze: bool = False
    use_proxmox_snapshot: bool = False
    with_memory: bool = False
    dont_try_suspend: bool = False
    schedule_id: int | None = None
    replicate_to_secondary: bool = False
    enable_locking: bool = False
    lock_retention_count: int | None = None
    lock_retention_unit: str | None = None
    excluded_vmids: tuple[int, ...] = ()


class BackupAbortedError(RuntimeError):
    """Raised when a backup cannot continue and the job must be failed with this message."""


class JobCancelledError(RuntimeError):
    """Raised when a running job is found cancelled between steps."""


@dataclass
class _BackupRun:
    job_id: int
    request: BackupRequest
    cluster: ProxmoxCluster | None = None
    vms: list[ProxmoxVM] = field(default_factory=list)
    stopped_vmids: set[int] = field(default_factory=set)
    freeze_attempted: list[ProxmoxVM] = field(default_factory=list)
    hypervisor_snapshots: dict[int, tuple[ProxmoxVM, str]] = field(default_factory=dict)
    hypervisor_cleanup_done: bool = False
    vm_results: dict[int, int] = field(default_factory=dict)
    vm_warnings: dict[int, list[str]] = field(default_factory=dict)
    record_ids: dict[int, int] = field(default_factory=dict)


class BackupOrchestrator:
    def __init__(
        self,
        *,
        clusters: Mapping[int, ProxmoxCluster],
        proxmox: ProxmoxClient,
        netapp: NetappClient,
        inventory: InventoryCache,
        metadata_store: BackupMetadataStore,
        config: BackupOrchestratorConfig | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.clusters = dict(clusters)
        self.proxmox = proxmox
        self.netapp = netapp
        self.inventory = inventory
        self.metadata_store = metadata_store
        self.config = config or BackupOrchestratorConfig()
        self._now = now
        self._clock = clock
        self._sleep = sleep

    async def start_backup(self, request: BackupRequest, *, cancel_event: asyncio.Event | None = None) -> bool:
        job = self.metadata_store.create_job(
            job_type=JOB_TYPE_BACKUP,
            related_vm=request.storage_name,
            payload_json=json.dumps(asdict(request), sort_keys=True),
        )
        run = _BackupRun(job_id=job.id, request=request)
        log = logger.bind(job_id=job.id, storage=request.storage_name, label=request.label)
        log.info("backup_started")

        try:
            succeeded = await self._execute(run, cancel_event=cancel_event)
        except BackupAbortedError as error:
            succeeded = self._fail(run, str(error))
        except (JobCancelledError, OperationCancelledError):
            succeeded = self._fail(run, CANCELLED_MESSAGE)
        except asyncio.CancelledError:
            self._fail(run, CANCELLED_MESSAGE)
            raise
        except Exception as error:  # pylint: disable=broad-except
            log.exception("backup_unexpected_failure")
            succeeded = self._fail(run, error_message(error))
        finally:
            await self._cleanup(run)

        log.info("backup_finished", succeeded=succeeded)
        return succeeded

    async def _execute(self, run: _BackupRun, *, cancel_event: asyncio.Event | None) -> bool:
        request = run.request

        cluster = self.clusters.get(request.cluster_id)
        if cluster is None:
            raise BackupAbortedError(f"Cluster with ID {request.cluster_id} not found.")
        if not cluster.hosts:
            raise BackupAbortedError("Cluster not properly configured.")
        run.cluster = cluster

        candidates = await self._resolve_vms(cluster, request)
        excluded = set(request.excluded_vmids)
        for vm in candidates:
            if vm.vmid in excluded:
                self._skip_vm(run, vm, "Excluded from backup")
        run.vms = [vm for vm in candidates if vm.vmid not in excluded]
        if not run.vms:
            raise BackupAbortedError(f"No VMs found in storage '{request.storage_name}'.")
        for vm in run.vms:
            run.vm_results[vm.vmid] = self._begin_vm(run, vm)

        run.stopped_vmids = await self._stopped_vmids(cluster, run.vms)
        for vm in run.vms:
            if vm.vmid in run.stopped_vmids:
                self.metadata_store.log_vm(
                    run.vm_results[vm.vmid],
                    "VM is stopped; the storage snapshot is taken without guest coordination.",
                )
        self._check_cancelled(run, cancel_event)

        if request.is_application_aware and request.enable_io_freeze:
            await self._freeze_vms(cluster, run)
            self.metadata_store.update_job_status(run.job_id, JOB_STATUS_PAUSED_VMS)

        if request.is_application_aware and request.use_proxmox_snapshot:
            await self._take_hypervisor_snapshots(cluster, run, cancel_event=cancel_event)
        self._check_cancelled(run, cancel_event)

        snapshot_result = await self.netapp.create_snapshot(
            request.controller_id,
            request.storage_name,
            label=request.label,
            lock=request.enable_locking,
            lock_retention_count=request.lock_retention_count if request.enable_locking else None,
            lock_retention_unit=request.lock_retention_unit if request.enable_locking else None,
        )
        if not snapshot_result.success:
            raise BackupAbortedError(snapshot_result.error_message or "Storage snapshot failed.")
        self.metadata_store.update_job_status(run.job_id, JOB_STATUS_SNAPSHOT_CREATED)
        snapshot_name = snapshot_result.snapshot_name

        await self._persist_records(cluster, run, snapshot_name)
        snapshot_row_id = self.metadata_store.add_netapp_snapshot(
            NetappSnapshot(
                job_id=run.job_id,
                snapshot_name=snapshot_name,
                primary_volume=request.storage_name,
                primary_controller_id=request.controller_id,
                created_at=self._now().isoformat(),
                snapmirror_label=request.label,
                exists_on_primary=True,
                exists_on_secondary=False,
                is_replicated=False,
                last_checked=self._now().isoformat(),
            )
        )

        if run.hypervisor_snapshots:
            await self._delete_hypervisor_snapshots(cluster, run)
        run.hypervisor_cleanup_done = True

        if request.replicate_to_secondary:
            await self._replicate(run, snapshot_name, snapshot_row_id, cancel_event=cancel_event)

        self._check_cancelled(run, cancel_event)
        self._finish_vm_results(run)
        return self.metadata_store.complete_job(run.job_id)

    async def _resolve_vms(self, cluster: ProxmoxCluster, request: BackupRequest) -> list[ProxmoxVM]:
        storage_map = await self.inventory.get_eligible_storage_with_vms(cluster, request.controller_id)
        for storage, storage_vms in storage_map.items():
            if storage.lower() == request.storage_name.lower():
                return list(storage_vms)
        return []

    async def _stopped_vmids(self, cluster: ProxmoxCluster, vms: list[ProxmoxVM]) -> set[int]:
        statuses = await asyncio.gather(
            *(self.proxmox.get_vm_status(cluster, vm) for vm in vms),
            return_exceptions=True,
        )
        stopped: set[int] = set()
        for vm, status in zip(vms, statuses):
            if isinstance(status, BaseException):
                if isinstance(status, asyncio.CancelledError):
                    raise status
                logger.warning("vm_status_unavailable", vmid=vm.vmid, error=error_message(status))
                continue
            if status.status == "stopped":
                stopped.add(vm.vmid)
        return stopped

    async def _freeze_vms(self, cluster: ProxmoxCluster, run: _BackupRun) -> None:
        for vm in run.vms:
            run.freeze_attempted.append(vm)
            try:
                await self.proxmox.pause_vm(cluster, vm)
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("vm_pause_failed", job_id=run.job_id, vmid=vm.vmid, error=error_message(error))
                self._warn_vm(run, vm, f"Pausing the VM failed: {error_message(error)}")

    async def _take_hypervisor_snapshots(
        self,
        cluster: ProxmoxCluster,
        run: _BackupRun,
        *,
        cancel_event: asyncio.Event | None,
    ) -> None:
        request = run.request
        self.metadata_store.update_job_status(run.job_id, JOB_STATUS_CREATING_SNAPSHOTS)
        snapshot_name = self._hypervisor_snapshot_name(request.label)

        pending: dict[int, tuple[ProxmoxVM, str]] = {}
        for vm in run.vms:
            if vm.vmid in run.stopped_vmids:
                logger.warning("hypervisor_snapshot_skipped_stopped_vm", job_id=run.job_id, vmid=vm.vmid)
                continue
            try:
                upid = await self.proxmox.create_snapshot(
                    cluster,
                    vm,
                    name=snapshot_name,
                    description=HYPERVISOR_SNAPSHOT_DESCRIPTION,
                    with_memory=request.with_memory,
                )
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("hypervisor_snapshot_request_failed", job_id=run.job_id, vmid=vm.vmid, error=error_message(error))
                self._warn_vm(run, vm, f"Hypervisor snapshot request failed: {error_message(error)}")
                continue
            pending[vm.vmid] = (vm, upid)
            run.hypervisor_snapshots[vm.vmid] = (vm, snapshot_name)

        self.metadata_store.update_job_status(run.job_id, JOB_STATUS_WAITING_SNAPSHOTS)
        outcomes = await asyncio.gather(
            *(
                self.proxmox.wait_for_task(
                    cluster,
                    vm,
                    upid,
                    timeout_seconds=self.config.snapshot_task_timeout_seconds,
                    cancel_event=cancel_event,
                )
                for vm, upid in pending.values()
            ),
            return_exceptions=True,
        )
        for (vm, upid), outcome in zip(pending.values(), outcomes):
            if isinstance(outcome, (asyncio.CancelledError, OperationCancelledError)):
                raise outcome
            if outcome is True:
                logger.info("hypervisor_snapshot_completed", job_id=run.job_id, vmid=vm.vmid)
                continue
            reason = error_message(outcome) if isinstance(outcome, BaseException) else "task did not finish OK"
            logger.warning("hypervisor_snapshot_incomplete", job_id=run.job_id, vmid=vm.vmid, upid=upid, reason=reason)
            self._warn_vm(run, vm, f"Hypervisor snapshot did not complete: {reason}")
            run.hypervisor_snapshots.pop(vm.vmid, None)

        self.metadata_store.update_job_status(run.job_id, JOB_STATUS_SNAPSHOTS_COMPLETED)

    async def _persist_records(self, cluster: ProxmoxCluster, run: _BackupRun, snapshot_name: str) -> None:
        request = run.request
        for vm in run.vms:
            try:
                configuration_json = await self.proxmox.capture_vm_configuration(cluster, vm)
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("vm_config_capture_failed", job_id=run.job_id, vmid=vm.vmid, error=error_message(error))
                self._warn_vm(run, vm, f"VM configuration could not be captured: {error_message(error)}")
                configuration_json = "{}"

            coordinated = vm.vmid not in run.stopped_vmids
            run.record_ids[vm.vmid] = self.metadata_store.add_backup_record(
                BackupRecord(
                    job_id=run.job_id,
                    vmid=vm.vmid,
                    vm_name=vm.name,
                    host_name=vm.host_name,
                    storage_name=request.storage_name,
                    snapshot_name=snapshot_name,
                    controller_id=request.controller_id,
                    label=request.label,
                    retention_count=request.retention_count,
                    retention_unit=request.retention_unit,
                    timestamp=self._now().isoformat(),
                    configuration_json=configuration_json,
                    schedule_id=request.schedule_id,
                    is_application_aware=coordinated and request.is_application_aware,
                    enable_io_freeze=coordinated and request.enable_io_freeze,
                    use_proxmox_snapshot=coordinated and request.use_proxmox_snapshot,
                    with_memory=coordinated and request.with_memory,
                    replicate_to_secondary=False,
                )
            )

    async def _replicate(
        self,
        run: _BackupRun,
        snapshot_name: str,
        snapshot_row_id: int,
        *,
        cancel_event: asyncio.Event | None,
    ) -> None:
        request = run.request
        relation = self.metadata_store.find_snapmirror_relation(request.storage_name)
        if relation is None:
            raise BackupAbortedError(f"No SnapMirror relation found for source volume '{request.storage_name}'.")

        self.metadata_store.update_job_status(run.job_id, JOB_STATUS_TRIGGERING_REPLICATION)
        try:
            await self.netapp.trigger_snapmirror_update(relation)
        except ServiceUnavailableError as error:
            raise BackupAbortedError(
                f"Failed to trigger SnapMirror update for relation {relation.uuid}: {error_message(error)}"
            ) from error

        self.metadata_store.update_job_status(run.job_id, JOB_STATUS_WAITING_REPLICATION)

        async def _replicated() -> bool:
            return await self._replication_confirmed(relation, snapshot_name)

        outcome = await poll_until(
            _replicated,
            interval=self.config.replication_poll_interval_seconds,
            ceiling=self.config.replication_timeout_seconds,
            cancel_event=cancel_event,
            delay_first=True,
            clock=self._clock,
            sleep=self._sleep,
        )
        if outcome is PollOutcome.TIMED_OUT:
            minutes = self.config.replication_timeout_seconds / 60
            raise BackupAbortedError(
                f"Replication of snapshot '{snapshot_name}' was not confirmed within {minutes:g} minutes."
            )

        snapshot_row = next(
            (row for row in self.metadata_store.get_netapp_snapshots(run.job_id) if row.id == snapshot_row_id),
            None,
        )
        if snapshot_row is not None:
            self.metadata_store.update_netapp_snapshot(
                replace(
                    snapshot_row,
                    secondary_volume=relation.destination_volume,
                    secondary_controller_id=relation.destination_controller_id,
                    exists_on_secondary=True,
                    is_replicated=True,
                    last_checked=self._now().isoformat(),
                )
            )
        self.metadata_store.mark_job_records_replicated(run.job_id)
        self.metadata_store.update_job_status(run.job_id, JOB_STATUS_REPLICATION_COMPLETED)
        logger.info("replication_confirmed", job_id=run.job_id, snapshot=snapshot_name, relation=relation.uuid)

    async def _replication_confirmed(self, relation: SnapMirrorRelation, snapshot_name: str) -> bool:
        try:
            live = await self.netapp.get_snapmirror_relation(relation)
            if not is_healthy_replication(live):
                return False
            secondary_snapshots = await self.netapp.list_snapshots(
                relation.destination_controller_id,
                relation.destination_volume,
            )
        except ServiceUnavailableError as error:
            logger.warning("replication_check_failed", relation=relation.uuid, error=error_message(error))
            return False
        return snapshot_name in secondary_snapshots

    def _check_cancelled(self, run: _BackupRun, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelledError(CANCELLED_MESSAGE)
        job = self.metadata_store.get_job(run.job_id)
        if job is not None and job.status == JOB_STATUS_CANCELLED:
            raise JobCancelledError(CANCELLED_MESSAGE)

    def _fail(self, run: _BackupRun, message: str) -> bool:
        logger.error("backup_failed", job_id=run.job_id, storage=run.request.storage_name, error=message)
        self.metadata_store.fail_job(run.job_id, message)
        self.metadata_store.fail_pending_vm_results(run.job_id, message)
        return False

    def _begin_vm(self, run: _BackupRun, vm: ProxmoxVM) -> int:
        return self.metadata_store.begin_vm_result(
            job_id=run.job_id,
            vmid=vm.vmid,
            vm_name=vm.name,
            host_name=vm.host_name,
            storage_name=run.request.storage_name,
        )

    def _skip_vm(self, run: _BackupRun, vm: ProxmoxVM, reason: str) -> None:
        result_id = self._begin_vm(run, vm)
        self.metadata_store.log_vm(result_id, reason)
        self.metadata_store.finish_vm_result(result_id, status=VM_RESULT_SKIPPED, reason=reason)

    def _warn_vm(self, run: _BackupRun, vm: ProxmoxVM, message: str) -> None:
        run.vm_warnings.setdefault(vm.vmid, []).append(message)
        result_id = run.vm_results.get(vm.vmid)
        if result_id is not None:
            self.metadata_store.log_vm(result_id, message, level="Warning")

    def _finish_vm_results(self, run: _BackupRun) -> None:
        for vm in run.vms:
            warnings = run.vm_warnings.get(vm.vmid, [])
            self.metadata_store.finish_vm_result(
                run.vm_results[vm.vmid],
                status=VM_RESULT_WARNING if warnings else VM_RESULT_SUCCESS,
                reason="; ".join(warnings),
                backup_record_id=run.record_ids.get(vm.vmid),
            )

    async def _cleanup(self, run: _BackupRun) -> None:
        if run.cluster is None:
            return

        for vm in run.freeze_attempted:
            try:
                await self.proxmox.unpause_vm(run.cluster, vm)
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("vm_unpause_failed", job_id=run.job_id, vmid=vm.vmid, error=error_message(error))

        if run.hypervisor_snapshots and not run.hypervisor_cleanup_done:
            await self._delete_hypervisor_snapshots(run.cluster, run)
            run.hypervisor_cleanup_done = True

    async def _delete_hypervisor_snapshots(self, cluster: ProxmoxCluster, run: _BackupRun) -> None:
        for vm, snapshot_name in list(run.hypervisor_snapshots.values()):
            try:
                await self.proxmox.delete_snapshot(cluster, vm, snapshot_name)
            except Exception as error:  # pylint: disable=broad-except
                logger.warning(
                    "hypervisor_snapshot_cleanup_failed",
                    job_id=run.job_id,
                    vmid=vm.vmid,
                    snapshot=snapshot_name,
                    error=error_message(error),
                )

    def _hypervisor_snapshot_name(self, label: str) -> str:
        local_time = self._now().astimezone(ZoneInfo(self.config.timezone))
        return f"{label}_{local_time:%Y-%m-%d-%H-%M-%S}"


def is_healthy_replication(relation: SnapMirrorRelation) -> bool:
    return (
        relation.state.lower() == "snapmirrored"
        and relation.healthy
        and relation.last_transfer_state.lower() == "success"
    )
