from __future__ import annotations

import asyncio
from datetime import UTC, datetime
import json
from pathlib import Path
from unittest.mock import ANY, AsyncMock, call

from nerdy_vm_snapshot_manager.backup import (
    BackupOrchestrator,
    BackupOrchestratorConfig,
    BackupRequest,
    is_healthy_replication,
)
from nerdy_vm_snapshot_manager.metadata import BackupMetadataStore
from nerdy_vm_snapshot_manager.models import (
    ProxmoxCluster,
    ProxmoxHost,
    ProxmoxVM,
    SnapMirrorRelation,
    SnapshotResult,
    StorageErrorKind,
    VmStatus,
)

FIXED_NOW = datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)
SNAPSHOT_NAME = "Daily-20250102030405"


def _cluster() -> ProxmoxCluster:
    return ProxmoxCluster(
        id=1,
        name="lab",
        username="root@pam",
        password="secret",
        hosts=(ProxmoxHost(hostname="pve1", address="10.0.0.11"),),
    )


def _vm(vmid: int) -> ProxmoxVM:
    return ProxmoxVM(vmid=vmid, name=f"vm-{vmid}", host_name="pve1", host_address="10.0.0.11")


def _request(**overrides) -> BackupRequest:
    values = {
        "storage_name": "ds1",
        "label": "Daily",
        "cluster_id": 1,
        "controller_id": 2,
        "retention_count": 7,
        "retention_unit": "Days",
    }
    values.update(overrides)
    return BackupRequest(**values)


def _relation(**overrides) -> SnapMirrorRelation:
    values = {
        "uuid": "rel-1",
        "source_volume": "ds1",
        "source_controller_id": 2,
        "destination_volume": "ds1_dst",
        "destination_controller_id": 3,
        "state": "snapmirrored",
        "healthy": True,
        "last_transfer_state": "success",
    }
    values.update(overrides)
    return SnapMirrorRelation(**values)


def _gateways(*, stopped: tuple[int, ...] = (102,)) -> tuple[AsyncMock, AsyncMock, AsyncMock]:
    proxmox = AsyncMock()

    async def _status(cluster, vm):
        if vm.vmid in stopped:
            return VmStatus(status="stopped", qmp_status="stopped")
        return VmStatus(status="running", qmp_status="running")

    proxmox.get_vm_status.side_effect = _status
    proxmox.create_snapshot.side_effect = lambda cluster, vm, **kwargs: f"UPID:{vm.vmid}"
    proxmox.wait_for_task.return_value = True
    proxmox.capture_vm_configuration.return_value = '{"config": {"cores": "2"}}'

    netapp = AsyncMock()
    netapp.create_snapshot.return_value = SnapshotResult(success=True, snapshot_name=SNAPSHOT_NAME)
    netapp.get_snapmirror_relation.return_value = _relation()
    netapp.list_snapshots.return_value = [SNAPSHOT_NAME]

    inventory = AsyncMock()
    inventory.get_eligible_storage_with_vms.return_value = {"DS1": [_vm(101), _vm(102)], "ds2": [_vm(201)]}
    return proxmox, netapp, inventory


def _orchestrator(
    tmp_path: Path,
    proxmox: AsyncMock,
    netapp: AsyncMock,
    inventory: AsyncMock,
    **kwargs,
) -> tuple[BackupOrchestrator, BackupMetadataStore]:
    store = BackupMetadataStore(tmp_path / "snapshots.db")
    store.initialize()
    orchestrator = BackupOrchestrator(
        clusters={1: _cluster()},
        proxmox=proxmox,
        netapp=netapp,
        inventory=inventory,
        metadata_store=store,
        now=lambda: FIXED_NOW,
        **kwargs,
    )
    return orchestrator, store


async def test_crash_consistent_backup_records_every_vm_and_completes(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(_request())

    job = store.get_recent_jobs(1)[0]
    records = store.get_backup_records(job.id)
    snapshots = store.get_netapp_snapshots(job.id)
    assert succeeded is True
    assert job.status == "Completed"
    assert job.related_vm == "ds1"
    assert json.loads(job.payload_json)["label"] == "Daily"
    assert [record.vmid for record in records] == [101, 102]
    assert all(record.snapshot_name == SNAPSHOT_NAME for record in records)
    assert all(record.configuration_json == '{"config": {"cores": "2"}}' for record in records)
    assert not any(record.is_application_aware or record.replicate_to_secondary for record in records)
    assert len(snapshots) == 1
    assert snapshots[0].exists_on_primary is True
    assert snapshots[0].is_replicated is False
    netapp.create_snapshot.assert_awaited_once_with(
        2,
        "ds1",
        label="Daily",
        lock=False,
        lock_retention_count=None,
        lock_retention_unit=None,
    )
    proxmox.pause_vm.assert_not_awaited()
    proxmox.create_snapshot.assert_not_awaited()


async def test_io_freeze_pauses_and_unpauses_each_vm_once_when_storage_snapshot_fails(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    netapp.create_snapshot.return_value = SnapshotResult(
        success=False,
        error_message="Volume 'ds1' not found.",
        error_kind=StorageErrorKind.VOLUME_NOT_FOUND,
    )
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(_request(is_application_aware=True, enable_io_freeze=True))

    job = store.get_recent_jobs(1)[0]
    assert succeeded is False
    assert job.status == "Failed"
    assert job.error_message == "Volume 'ds1' not found."
    assert proxmox.pause_vm.await_args_list == [call(ANY, _vm(101)), call(ANY, _vm(102))]
    assert proxmox.unpause_vm.await_args_list == [call(ANY, _vm(101)), call(ANY, _vm(102))]
    assert store.get_backup_records(job.id) == []


async def test_io_freeze_unpauses_after_successful_backup(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(_request(is_application_aware=True, enable_io_freeze=True))

    records = store.get_backup_records()
    assert succeeded is True
    assert proxmox.unpause_vm.await_count == 2
    assert [(record.vmid, record.enable_io_freeze) for record in records] == [(101, True), (102, False)]


async def test_hypervisor_snapshots_are_taken_for_running_vms_and_removed_afterwards(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(
        _request(is_application_aware=True, use_proxmox_snapshot=True, with_memory=True)
    )

    records = store.get_backup_records()
    assert succeeded is True
    proxmox.create_snapshot.assert_awaited_once_with(
        ANY,
        _vm(101),
        name="Daily_2025-01-02-03-04-05",
        description=ANY,
        with_memory=True,
    )
    proxmox.delete_snapshot.assert_awaited_once_with(ANY, _vm(101), "Daily_2025-01-02-03-04-05")
    assert [(record.vmid, record.use_proxmox_snapshot, record.with_memory) for record in records] == [
        (101, True, True),
        (102, False, False),
    ]


async def test_hypervisor_snapshot_name_uses_configured_timezone(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways(stopped=())
    orchestrator, _ = _orchestrator(
        tmp_path,
        proxmox,
        netapp,
        inventory,
        config=BackupOrchestratorConfig(timezone="Europe/Berlin"),
    )

    await orchestrator.start_backup(_request(is_application_aware=True, use_proxmox_snapshot=True))

    assert {item.kwargs["name"] for item in proxmox.create_snapshot.await_args_list} == {"Daily_2025-01-02-04-04-05"}


async def test_timed_out_hypervisor_snapshot_does_not_fail_other_vms(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways(stopped=())

    async def _wait(cluster, vm, upid, **kwargs):
        return vm.vmid != 102

    proxmox.wait_for_task.side_effect = _wait
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(_request(is_application_aware=True, use_proxmox_snapshot=True))

    assert succeeded is True
    assert proxmox.wait_for_task.await_count == 2
    assert [item.args[1].vmid for item in proxmox.delete_snapshot.await_args_list] == [101]
    assert len(store.get_backup_records()) == 2


async def test_replication_is_confirmed_before_records_are_marked(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    sleep = AsyncMock()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory, clock=lambda: 0.0, sleep=sleep)
    store.replace_snapmirror_relations(destination_controller_id=3, relations=[_relation()])

    succeeded = await orchestrator.start_backup(_request(replicate_to_secondary=True))

    job = store.get_recent_jobs(1)[0]
    snapshot = store.get_netapp_snapshots(job.id)[0]
    assert succeeded is True
    assert job.status == "Completed"
    netapp.trigger_snapmirror_update.assert_awaited_once_with(_relation())
    netapp.list_snapshots.assert_awaited_with(3, "ds1_dst")
    sleep.assert_awaited_once_with(10)
    assert all(record.replicate_to_secondary for record in store.get_backup_records(job.id))
    assert snapshot.is_replicated is True
    assert snapshot.exists_on_secondary is True
    assert snapshot.secondary_volume == "ds1_dst"


async def test_replication_not_confirmed_within_ceiling_fails_job(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    netapp.list_snapshots.return_value = ["Daily-20241231000000"]
    now = [0.0]

    async def _advance(seconds: float) -> None:
        now[0] += seconds

    orchestrator, store = _orchestrator(
        tmp_path,
        proxmox,
        netapp,
        inventory,
        config=BackupOrchestratorConfig(replication_poll_interval_seconds=10, replication_timeout_seconds=60),
        clock=lambda: now[0],
        sleep=_advance,
    )
    store.replace_snapmirror_relations(destination_controller_id=3, relations=[_relation()])

    succeeded = await orchestrator.start_backup(_request(replicate_to_secondary=True))

    job = store.get_recent_jobs(1)[0]
    assert succeeded is False
    assert job.status == "Failed"
    assert job.error_message == f"Replication of snapshot '{SNAPSHOT_NAME}' was not confirmed within 1 minutes."
    assert not any(record.replicate_to_secondary for record in store.get_backup_records(job.id))


def test_unhealthy_relation_is_not_treated_as_replicated() -> None:
    assert is_healthy_replication(_relation()) is True
    assert is_healthy_replication(_relation(healthy=False)) is False
    assert is_healthy_replication(_relation(state="broken_off")) is False
    assert is_healthy_replication(_relation(last_transfer_state="failed")) is False


async def test_missing_snapmirror_relation_fails_replicating_backup(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(_request(replicate_to_secondary=True))

    job = store.get_recent_jobs(1)[0]
    assert succeeded is False
    assert job.error_message == "No SnapMirror relation found for source volume 'ds1'."
    netapp.trigger_snapmirror_update.assert_not_awaited()


async def test_unknown_cluster_fails_without_touching_gateways(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(_request(cluster_id=9))

    job = store.get_recent_jobs(1)[0]
    assert succeeded is False
    assert job.error_message == "Cluster with ID 9 not found."
    inventory.get_eligible_storage_with_vms.assert_not_awaited()
    netapp.create_snapshot.assert_not_awaited()


async def test_storage_without_vms_fails_job(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(_request(storage_name="ds3"))

    job = store.get_recent_jobs(1)[0]
    assert succeeded is False
    assert job.error_message == "No VMs found in storage 'ds3'."


async def test_excluded_vms_are_left_out_of_the_backup(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(_request(excluded_vmids=(102,)))

    assert succeeded is True
    assert [record.vmid for record in store.get_backup_records()] == [101]


async def test_config_capture_failure_stores_empty_configuration(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    proxmox.capture_vm_configuration.side_effect = RuntimeError("ssh refused")
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(_request())

    assert succeeded is True
    assert {record.configuration_json for record in store.get_backup_records()} == {"{}"}


async def test_external_cancel_leaves_job_cancelled(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    async def _snapshot_then_cancel(*args, **kwargs):
        store.cancel_job(store.get_recent_jobs(1)[0].id)
        return SnapshotResult(success=True, snapshot_name=SNAPSHOT_NAME)

    netapp.create_snapshot.side_effect = _snapshot_then_cancel

    succeeded = await orchestrator.start_backup(_request())

    job = store.get_recent_jobs(1)[0]
    assert succeeded is False
    assert job.status == "Cancelled"
    assert job.error_message == "Job was cancelled."


async def test_cancel_event_stops_job_before_pausing_or_snapshotting(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    cancel_event = asyncio.Event()
    cancel_event.set()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(
        _request(is_application_aware=True, enable_io_freeze=True),
        cancel_event=cancel_event,
    )

    job = store.get_recent_jobs(1)[0]
    assert succeeded is False
    assert job.status == "Failed"
    assert job.error_message == "Job was cancelled."
    netapp.create_snapshot.assert_not_awaited()
    proxmox.pause_vm.assert_not_awaited()


async def test_unexpected_gateway_error_fails_job_and_runs_cleanup(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    netapp.create_snapshot.side_effect = RuntimeError("controller exploded")
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    succeeded = await orchestrator.start_backup(_request(is_application_aware=True, enable_io_freeze=True))

    job = store.get_recent_jobs(1)[0]
    assert succeeded is False
    assert job.error_message == "controller exploded"
    assert proxmox.unpause_vm.await_count == 2


async def test_cancel_during_replication_wait_fails_job_and_unpauses_vms(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    netapp.list_snapshots.return_value = []
    cancel_event = asyncio.Event()
    slept: list[float] = []

    async def _sleep_then_cancel(seconds: float) -> None:
        slept.append(seconds)
        cancel_event.set()

    orchestrator, store = _orchestrator(
        tmp_path,
        proxmox,
        netapp,
        inventory,
        clock=lambda: 0.0,
        sleep=_sleep_then_cancel,
    )
    store.replace_snapmirror_relations(destination_controller_id=3, relations=[_relation()])

    succeeded = await orchestrator.start_backup(
        _request(replicate_to_secondary=True, is_application_aware=True, enable_io_freeze=True),
        cancel_event=cancel_event,
    )

    job = store.get_recent_jobs(1)[0]
    assert succeeded is False
    assert job.status == "Failed"
    assert job.error_message == "Job was cancelled."
    assert slept == [10]
    netapp.trigger_snapmirror_update.assert_awaited_once()
    assert proxmox.unpause_vm.await_args_list == [call(ANY, _vm(101)), call(ANY, _vm(102))]
    assert not any(record.replicate_to_secondary for record in store.get_backup_records(job.id))
    assert {result.status for result in store.get_vm_results(job.id)} == {"Failed"}


async def test_successful_backup_records_a_result_per_vm(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    await orchestrator.start_backup(_request())

    job = store.get_recent_jobs(1)[0]
    records = {record.vmid: record.id for record in store.get_backup_records(job.id)}
    results = store.get_vm_results(job.id)
    assert [(result.vmid, result.status, result.reason) for result in results] == [
        (101, "Success", ""),
        (102, "Success", ""),
    ]
    assert [result.backup_record_id for result in results] == [records[101], records[102]]
    assert store.get_vm_logs(results[0].id) == []
    assert [entry.message for entry in store.get_vm_logs(results[1].id)] == [
        "VM is stopped; the storage snapshot is taken without guest coordination."
    ]


async def test_excluded_vm_gets_a_skipped_result(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    await orchestrator.start_backup(_request(excluded_vmids=(102,)))

    job = store.get_recent_jobs(1)[0]
    results = {result.vmid: result for result in store.get_vm_results(job.id)}
    assert results[102].status == "Skipped"
    assert results[102].reason == "Excluded from backup"
    assert results[102].backup_record_id is None
    assert results[101].status == "Success"


async def test_config_capture_failure_marks_vm_result_as_warning(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    proxmox.capture_vm_configuration.side_effect = RuntimeError("ssh refused")
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    await orchestrator.start_backup(_request())

    job = store.get_recent_jobs(1)[0]
    results = store.get_vm_results(job.id)
    assert {result.status for result in results} == {"Warning"}
    assert results[0].reason == "VM configuration could not be captured: ssh refused"
    assert [(entry.level, entry.message) for entry in store.get_vm_logs(results[0].id)] == [
        ("Warning", "VM configuration could not be captured: ssh refused")
    ]


async def test_failed_backup_marks_pending_vm_results_failed(tmp_path: Path) -> None:
    proxmox, netapp, inventory = _gateways()
    netapp.create_snapshot.return_value = SnapshotResult(success=False, error_message="Volume 'ds1' not found.")
    orchestrator, store = _orchestrator(tmp_path, proxmox, netapp, inventory)

    await orchestrator.start_backup(_request(excluded_vmids=(102,)))

    job = store.get_recent_jobs(1)[0]
    results = {result.vmid: result for result in store.get_vm_results(job.id)}
    assert results[101].status == "Failed"
    assert results[101].error_message == "Volume 'ds1' not found."
    assert results[102].status == "Skipped"
