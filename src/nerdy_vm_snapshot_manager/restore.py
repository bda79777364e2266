from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
import json
from typing import Callable, Mapping

import structlog

from .inventory import InventoryCache
from .metadata import CANCELLED_MESSAGE, BackupMetadataStore
from .models import (
    JOB_STATUS_CANCELLED,
    JOB_STATUS_CLONED_VOLUME,
    JOB_STATUS_EXPORT_PATH_SET,
    JOB_STATUS_EXPORT_POLICY_APPLIED,
    JOB_STATUS_MOUNTED,
    JOB_TYPE_RESTORE,
    RESTORE_CREATE_NEW,
    RESTORE_REPLACE_ORIGINAL,
    RESTORE_TYPES,
    VM_RESULT_SUCCESS,
    BackupRecord,
    ProxmoxCluster,
    ProxmoxHost,
    ProxmoxVM,
)
from .netapp import NetappClient
from .polling import OperationCancelledError
from .proxmox import ProxmoxClient
from .remote import ServiceUnavailableError, error_message
from .vmconfig import build_restored_config

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RestoreRequest:
    backup_record_id: int
    cluster_id: int
    target_host: str
    restore_type: str = RESTORE_CREATE_NEW
    new_vm_name: str | None = None
    controller_id: int | None = None
    volume_name: str | None = None
    start_disconnected: bool = False
    link_directory: bool = False


class RestoreAbortedError(RuntimeError):
    """Raised when a restore cannot continue and the job must be failed with this message."""


@dataclass
class _RestoreRun:
    job_id: int
    request: RestoreRequest
    vm_result_id: int | None = None
    controller_id: int | None = None
    clone_name: str = ""
    cloned: bool = False
    cluster: ProxmoxCluster | None = None
    target: ProxmoxHost | None = None
    mounted: bool = False
    original_removed: bool = False
    completed: bool = False


class RestoreOrchestrator:
    """Bring a VM back from a storage snapshot by cloning the volume and registering the VM on a host.

    The clone is exported and mounted as a new NFS storage on the target host. The VM
    either keeps its original id, replacing the original VM, or receives the next free
    id. A failed restore removes the mount and the clone again, unless the original VM
    had already been destroyed; the clone is then kept for manual recovery.
    """

    def __init__(
        self,
        *,
        clusters: Mapping[int, ProxmoxCluster],
        proxmox: ProxmoxClient,
        netapp: NetappClient,
        metadata_store: BackupMetadataStore,
        inventory: InventoryCache | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        self.clusters = dict(clusters)
        self.proxmox = proxmox
        self.netapp = netapp
        self.metadata_store = metadata_store
        self.inventory = inventory
        self._now = now

    async def start_restore(self, request: RestoreRequest, *, cancel_event: asyncio.Event | None = None) -> bool:
        record = self.metadata_store.get_backup_record(request.backup_record_id)
        job = self.metadata_store.create_job(
            job_type=JOB_TYPE_RESTORE,
            related_vm=record.vm_name if record else f"backup record {request.backup_record_id}",
            payload_json=json.dumps(asdict(request), sort_keys=True),
        )
        run = _RestoreRun(job_id=job.id, request=request)
        log = logger.bind(job_id=job.id, backup_record_id=request.backup_record_id, restore_type=request.restore_type)
        log.info("restore_started")

        try:
            if record is None:
                raise RestoreAbortedError(f"Backup record {request.backup_record_id} not found.")
            succeeded = await self._execute(run, record, cancel_event=cancel_event)
        except RestoreAbortedError as error:
            succeeded = self._fail(run, str(error))
        except OperationCancelledError:
            succeeded = self._fail(run, CANCELLED_MESSAGE)
        except asyncio.CancelledError:
            self._fail(run, CANCELLED_MESSAGE)
            raise
        except Exception as error:  # pylint: disable=broad-except
            log.exception("restore_unexpected_failure")
            succeeded = self._fail(run, error_message(error))
        finally:
            await self._cleanup(run)

        log.info("restore_finished", succeeded=succeeded)
        return succeeded

    async def _execute(self, run: _RestoreRun, record: BackupRecord, *, cancel_event: asyncio.Event | None) -> bool:
        request = run.request
        if request.restore_type not in RESTORE_TYPES:
            raise RestoreAbortedError(f"Unknown restore type '{request.restore_type}'.")

        volume_name = request.volume_name or record.storage_name
        controller_id = request.controller_id if request.controller_id is not None else record.controller_id
        run.controller_id = controller_id
        run.vm_result_id = self.metadata_store.begin_vm_result(
            job_id=run.job_id,
            vmid=record.vmid,
            vm_name=record.vm_name,
            host_name=request.target_host,
            storage_name=volume_name,
        )
        self._log(run, "Restore job started.")

        cluster = self.clusters.get(request.cluster_id)
        if cluster is None:
            raise RestoreAbortedError(f"Cluster with ID {request.cluster_id} not found.")
        target = _find_host(cluster, request.target_host)
        if target is None:
            raise RestoreAbortedError("Selected target host not found in cluster.")
        original_vm: ProxmoxVM | None = None
        if request.restore_type == RESTORE_REPLACE_ORIGINAL:
            original_host = _find_host(cluster, record.host_name)
            if original_host is None:
                raise RestoreAbortedError(f"Original host '{record.host_name}' not found in cluster.")
            original_vm = ProxmoxVM(
                vmid=record.vmid,
                name=record.vm_name,
                host_name=original_host.hostname,
                host_address=original_host.address,
            )
        if controller_id not in self.netapp.controllers:
            raise RestoreAbortedError(f"NetApp controller {controller_id} not found.")
        run.cluster = cluster
        run.target = target
        self._check_cancelled(run, cancel_event)

        clone_name = f"restore_{run.job_id}_{self._now().astimezone(UTC):%Y%m%d%H%M%S}"
        self._log(run, f"Cloning volume '{volume_name}' from snapshot '{record.snapshot_name}' to '{clone_name}'.")
        clone = await self.netapp.clone_volume_from_snapshot(
            controller_id,
            volume_name=volume_name,
            snapshot_name=record.snapshot_name,
            clone_name=clone_name,
        )
        if not clone.success:
            raise RestoreAbortedError(clone.error_message or f"Cloning volume '{volume_name}' failed.")
        run.clone_name = clone_name
        run.cloned = True
        self.metadata_store.update_job_status(run.job_id, JOB_STATUS_CLONED_VOLUME)
        self._check_cancelled(run, cancel_event)

        try:
            policy = await self.netapp.copy_export_policy(
                controller_id,
                source_volume=volume_name,
                target_volume=clone_name,
            )
        except ServiceUnavailableError as error:
            raise RestoreAbortedError(f"Failed to apply export policy on clone: {error_message(error)}") from error
        self._log(run, f"Export policy '{policy}' applied to '{clone_name}'.")
        self.metadata_store.update_job_status(run.job_id, JOB_STATUS_EXPORT_POLICY_APPLIED)

        export_path = f"/{clone_name}"
        try:
            await self.netapp.set_volume_export_path(controller_id, clone_name, export_path)
            volume = await self.netapp.lookup_volume(controller_id, clone_name, fields="uuid,svm.name")
            svm_name = ((volume or {}).get("svm") or {}).get("name")
            mount_ips = await self.netapp.get_nfs_enabled_ips(controller_id, svm_name) if svm_name else []
        except ServiceUnavailableError as error:
            raise RestoreAbortedError(f"Failed to export clone '{clone_name}': {error_message(error)}") from error
        if not mount_ips:
            raise RestoreAbortedError(f"Mount info not found for clone '{clone_name}'.")
        self.metadata_store.update_job_status(run.job_id, JOB_STATUS_EXPORT_PATH_SET)
        self._check_cancelled(run, cancel_event)

        self._log(run, f"Mounting NFS on host '{target.hostname}' ({target.address}).")
        mounted = await self.proxmox.mount_nfs_storage(
            cluster,
            target,
            storage=clone_name,
            server=mount_ips[0],
            export=export_path,
            cancel_event=cancel_event,
        )
        run.mounted = True
        if not mounted:
            raise RestoreAbortedError("Failed to mount clone on target host.")
        self.metadata_store.update_job_status(run.job_id, JOB_STATUS_MOUNTED)
        self._check_cancelled(run, cancel_event)

        self._log(run, f"Starting restore to host '{target.hostname}' (type: {request.restore_type}).")
        if original_vm is not None:
            self._log(run, f"Shutting down and removing original VM {original_vm.vmid} on '{original_vm.host_name}'.")
            run.original_removed = True
            await self.proxmox.shutdown_and_remove_vm(cluster, original_vm, cancel_event=cancel_event)
            new_vmid = original_vm.vmid
        else:
            new_vmid = await self.proxmox.get_next_vmid(cluster, target)

        await self._relocate_disks(run, cluster, target, old_vmid=record.vmid, new_vmid=new_vmid)

        try:
            content = build_restored_config(
                record.configuration_json,
                old_storage=record.storage_name,
                new_storage=clone_name,
                old_vmid=record.vmid,
                new_vmid=new_vmid,
                name=request.new_vm_name,
                start_disconnected=request.start_disconnected,
                rename_files=not request.link_directory,
            )
        except ValueError as error:
            raise RestoreAbortedError(f"Cannot rebuild VM configuration: {error}") from error

        if not await self.proxmox.write_vm_config(cluster, target, new_vmid, content):
            raise RestoreAbortedError(f"Writing configuration for VM {new_vmid} failed.")

        self._check_cancelled(run, cancel_event)
        run.completed = True
        self._log(run, f"Restore completed as VM {new_vmid}.")
        self.metadata_store.finish_vm_result(run.vm_result_id, status=VM_RESULT_SUCCESS)
        if self.inventory is not None:
            self.inventory.invalidate_cluster(cluster.id)
        return self.metadata_store.complete_job(run.job_id)

    async def _relocate_disks(
        self,
        run: _RestoreRun,
        cluster: ProxmoxCluster,
        target: ProxmoxHost,
        *,
        old_vmid: int,
        new_vmid: int,
    ) -> None:
        if old_vmid == new_vmid:
            return
        if run.request.link_directory:
            done = await self.proxmox.link_vm_directory(
                cluster,
                target,
                storage=run.clone_name,
                link_vmid=str(new_vmid),
                target_vmid=str(old_vmid),
            )
        else:
            done = await self.proxmox.rename_vm_directory(
                cluster,
                target,
                storage=run.clone_name,
                old_vmid=str(old_vmid),
                new_vmid=str(new_vmid),
            )
        if not done:
            raise RestoreAbortedError(f"Moving disks of VM {old_vmid} to VM {new_vmid} on '{run.clone_name}' failed.")

    def _log(self, run: _RestoreRun, message: str, level: str = "Info") -> None:
        if run.vm_result_id is not None:
            self.metadata_store.log_vm(run.vm_result_id, message, level=level)

    def _check_cancelled(self, run: _RestoreRun, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(CANCELLED_MESSAGE)
        job = self.metadata_store.get_job(run.job_id)
        if job is not None and job.status == JOB_STATUS_CANCELLED:
            raise OperationCancelledError(CANCELLED_MESSAGE)

    def _fail(self, run: _RestoreRun, message: str) -> bool:
        logger.error("restore_failed", job_id=run.job_id, backup_record_id=run.request.backup_record_id, error=message)
        self._log(run, message, level="Error")
        self.metadata_store.fail_job(run.job_id, message)
        self.metadata_store.fail_pending_vm_results(run.job_id, message)
        return False

    async def _cleanup(self, run: _RestoreRun) -> None:
        if run.completed or not run.cloned:
            return
        if run.original_removed:
            logger.warning("restore_clone_kept_for_recovery", job_id=run.job_id, clone=run.clone_name)
            return

        if run.mounted and run.cluster is not None and run.target is not None:
            try:
                await self.proxmox.unmount_nfs_storage(run.cluster, run.target, run.clone_name)
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("restore_unmount_failed", job_id=run.job_id, clone=run.clone_name, error=error_message(error))

        if run.controller_id is not None and not await self.netapp.delete_volume(run.controller_id, run.clone_name):
            logger.warning("restore_clone_delete_failed", job_id=run.job_id, clone=run.clone_name)


def _find_host(cluster: ProxmoxCluster, name_or_address: str) -> ProxmoxHost | None:
    wanted = name_or_address.strip().lower()
    for host in cluster.hosts:
        if host.hostname.lower() == wanted or host.address.lower() == wanted:
            return host
    return None
