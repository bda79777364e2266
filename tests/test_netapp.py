from __future__ import annotations

from datetime import UTC, datetime
import json
from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from nerdy_vm_snapshot_manager.models import NetappController, SnapMirrorRelation, StorageErrorKind
from nerdy_vm_snapshot_manager.netapp import (
    ExportSettingNotAppliedError,
    NetappClient,
    build_snapshot_name,
    parse_snapmirror_relation,
)
from nerdy_vm_snapshot_manager.remote import ServiceUnavailableError

PRIMARY = "https://na-primary/api"
SECONDARY = "https://na-secondary/api"
FIXED_NOW = datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)


def _controllers() -> dict[int, NetappController]:
    return {
        2: NetappController(
            id=2,
            name="primary",
            address="na-primary",
            username="admin",
            password="pw",
            selected_volumes=("ds1",),
        ),
        3: NetappController(
            id=3,
            name="secondary",
            address="na-secondary",
            username="admin",
            password="pw",
            is_primary=False,
            selected_volumes=("ds1_dst",),
        ),
    }


def _client(http_client: httpx.AsyncClient, **kwargs) -> NetappClient:
    return NetappClient(controllers=_controllers(), http_client=http_client, now=lambda: FIXED_NOW, **kwargs)


def _volume(uuid: str = "vol-1", name: str = "ds1") -> httpx.Response:
    return httpx.Response(200, json={"records": [{"uuid": uuid, "name": name}], "num_records": 1})


def _empty() -> httpx.Response:
    return httpx.Response(200, json={"records": [], "num_records": 0})


def test_build_snapshot_name_uses_label_and_utc_timestamp() -> None:
    assert build_snapshot_name("Daily", FIXED_NOW) == "Daily-20250102030405"


async def test_create_snapshot_posts_name_and_snapmirror_label() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(return_value=_volume())
        create = router.post(f"{PRIMARY}/storage/volumes/vol-1/snapshots").respond(202, json={"job": {"uuid": "j1"}})

        async with httpx.AsyncClient() as http_client:
            result = await _client(http_client).create_snapshot(2, "ds1", label="Daily")

    assert result.success is True
    assert result.snapshot_name == "Daily-20250102030405"
    assert json.loads(create.calls.last.request.content) == {
        "name": "Daily-20250102030405",
        "snapmirror_label": "Daily",
    }
    assert create.calls.last.request.headers["authorization"].startswith("Basic ")


async def test_create_snapshot_with_lock_sets_expiry_time() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(return_value=_volume())
        create = router.post(f"{PRIMARY}/storage/volumes/vol-1/snapshots").respond(201, json={})

        async with httpx.AsyncClient() as http_client:
            result = await _client(http_client).create_snapshot(
                2,
                "ds1",
                label="Weekly",
                lock=True,
                lock_retention_count=2,
                lock_retention_unit="Days",
            )

    body = json.loads(create.calls.last.request.content)
    assert result.success is True
    assert body["expiry_time"] == "2025-01-04T03:04:05+00:00"
    assert body["snaplock"] == {"expiry_time": "2025-01-04T03:04:05+00:00"}


@pytest.mark.parametrize(
    ("count", "unit"),
    [(None, "Days"), (3, None), (3, "Months"), (0, "Days")],
)
async def test_create_snapshot_rejects_invalid_lock_settings_without_calling_controller(count, unit) -> None:
    with respx.mock(assert_all_called=False) as router:
        async with httpx.AsyncClient() as http_client:
            result = await _client(http_client).create_snapshot(
                2,
                "ds1",
                label="Daily",
                lock=True,
                lock_retention_count=count,
                lock_retention_unit=unit,
            )

    assert result.success is False
    assert result.error_kind is StorageErrorKind.INVALID_REQUEST
    assert router.calls.call_count == 0


async def test_create_snapshot_reports_missing_volume() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(return_value=_empty())

        async with httpx.AsyncClient() as http_client:
            result = await _client(http_client).create_snapshot(2, "ds9", label="Daily")

    assert result.success is False
    assert result.error_kind is StorageErrorKind.VOLUME_NOT_FOUND
    assert result.error_message == "Volume 'ds9' not found."


async def test_create_snapshot_reports_remote_error_on_server_failure() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(return_value=_volume())
        router.post(f"{PRIMARY}/storage/volumes/vol-1/snapshots").respond(500, text="internal error")

        async with httpx.AsyncClient() as http_client:
            result = await _client(http_client).create_snapshot(2, "ds1", label="Daily")

    assert result.success is False
    assert result.error_kind is StorageErrorKind.REMOTE_ERROR
    assert "HTTP 500" in result.error_message


async def test_delete_snapshot_distinguishes_missing_snapshot_from_missing_volume() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(side_effect=[_volume(), _empty()])
        router.get(f"{PRIMARY}/storage/volumes/vol-1/snapshots").mock(return_value=_empty())

        async with httpx.AsyncClient() as http_client:
            client = _client(http_client)
            missing_snapshot = await client.delete_snapshot(2, "ds1", "Daily-20250101000000")
            missing_volume = await client.delete_snapshot(2, "ds9", "Daily-20250101000000")

    assert missing_snapshot.error_kind is StorageErrorKind.SNAPSHOT_NOT_FOUND
    assert missing_snapshot.error_message == "Snapshot 'Daily-20250101000000' not found on volume 'ds1'."
    assert missing_volume.error_kind is StorageErrorKind.VOLUME_NOT_FOUND


async def test_delete_snapshot_removes_snapshot_by_uuid() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(return_value=_volume())
        router.get(f"{PRIMARY}/storage/volumes/vol-1/snapshots").respond(
            200, json={"records": [{"name": "Daily-20250101000000", "uuid": "snap-9"}]}
        )
        delete = router.delete(f"{PRIMARY}/storage/volumes/vol-1/snapshots/snap-9").respond(202, json={})

        async with httpx.AsyncClient() as http_client:
            result = await _client(http_client).delete_snapshot(2, "ds1", "Daily-20250101000000")

    assert result.success is True
    assert delete.call_count == 1


async def test_list_snapshots_returns_empty_list_for_unknown_volume() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{SECONDARY}/storage/volumes").mock(return_value=_empty())

        async with httpx.AsyncClient() as http_client:
            assert await _client(http_client).list_snapshots(3, "ds1_dst") == []


async def test_get_volumes_with_mount_info_skips_volumes_without_nfs_interfaces() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/network/ip/interfaces").respond(
            200,
            json={"records": [{"ip": {"address": "10.1.0.5"}, "svm": {"name": "svm1"}}]},
        )
        router.get(f"{PRIMARY}/storage/volumes").respond(
            200,
            json={
                "records": [
                    {"name": "ds1", "svm": {"name": "svm1"}},
                    {"name": "ds2", "svm": {"name": "svm-iscsi"}},
                ]
            },
        )

        async with httpx.AsyncClient() as http_client:
            volumes = await _client(http_client).get_volumes_with_mount_info(2)

    assert [(volume.volume_name, volume.mount_ips) for volume in volumes] == [("ds1", ("10.1.0.5",))]


async def test_set_volume_export_path_retries_until_attempts_are_exhausted() -> None:
    sleep = AsyncMock()
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(return_value=_volume())
        patch = router.patch(f"{PRIMARY}/storage/volumes/vol-1").respond(202, json={})
        router.get(f"{PRIMARY}/storage/volumes/vol-1").respond(200, json={"nas": {"path": "/old"}})

        async with httpx.AsyncClient() as http_client:
            with pytest.raises(ExportSettingNotAppliedError):
                await _client(http_client, sleep=sleep).set_volume_export_path(2, "ds1", "/restore_ds1")

    assert patch.call_count == 5
    assert sleep.await_count == 4


async def test_set_volume_export_path_succeeds_once_read_back_matches() -> None:
    sleep = AsyncMock()
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(return_value=_volume())
        patch = router.patch(f"{PRIMARY}/storage/volumes/vol-1").respond(202, json={})
        router.get(f"{PRIMARY}/storage/volumes/vol-1").mock(
            side_effect=[
                httpx.Response(200, json={"nas": {"path": "/old"}}),
                httpx.Response(200, json={"nas": {"path": "/restore_ds1"}}),
            ]
        )

        async with httpx.AsyncClient() as http_client:
            await _client(http_client, sleep=sleep).set_volume_export_path(2, "ds1", "/restore_ds1")

    assert patch.call_count == 2
    assert json.loads(patch.calls.last.request.content) == {"nas": {"path": "/restore_ds1"}}


async def test_clone_volume_from_snapshot_returns_job_uuid() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").respond(
            200, json={"records": [{"uuid": "vol-1", "name": "ds1", "svm": {"name": "svm1"}}]}
        )
        router.get(f"{PRIMARY}/storage/volumes/vol-1/snapshots").respond(
            200, json={"records": [{"name": "Daily-1", "uuid": "snap-1"}]}
        )
        create = router.post(f"{PRIMARY}/storage/volumes").respond(202, json={"job": {"uuid": "job-7"}})

        async with httpx.AsyncClient() as http_client:
            result = await _client(http_client).clone_volume_from_snapshot(
                2,
                volume_name="ds1",
                snapshot_name="Daily-1",
                clone_name="restore_ds1",
            )

    body = json.loads(create.calls.last.request.content)
    assert result.success is True
    assert result.job_uuid == "job-7"
    assert body["clone"]["parent_snapshot"] == {"uuid": "snap-1"}
    assert body["svm"] == {"name": "svm1"}


async def test_trigger_snapmirror_update_posts_to_destination_controller() -> None:
    relation = SnapMirrorRelation(
        uuid="rel-1",
        source_volume="ds1",
        source_controller_id=2,
        destination_volume="ds1_dst",
        destination_controller_id=3,
    )
    with respx.mock(assert_all_called=True) as router:
        transfer = router.post(f"{SECONDARY}/snapmirror/relationships/rel-1/transfers").respond(202, json={})

        async with httpx.AsyncClient() as http_client:
            await _client(http_client).trigger_snapmirror_update(relation)

    assert json.loads(transfer.calls.last.request.content) == {}


def test_parse_snapmirror_relation_splits_svm_paths() -> None:
    relation = parse_snapmirror_relation(
        {
            "uuid": "rel-1",
            "source": {"path": "svm1:ds1"},
            "destination": {"path": "svm2:ds1_dst", "svm": {"name": "svm2"}},
            "policy": {"name": "MirrorAndVault", "type": "mirror_vault"},
            "state": "snapmirrored",
            "healthy": True,
            "lag_time": "PT5M",
            "transfer": {"state": "success", "end_time": "2025-01-02T03:10:00Z"},
        },
        source_controller_id=2,
        destination_controller_id=3,
    )

    assert relation.source_svm == "svm1"
    assert relation.source_volume == "ds1"
    assert relation.destination_volume == "ds1_dst"
    assert relation.policy_type == "mirror_vault"
    assert relation.healthy is True
    assert relation.last_transfer_state == "success"


def test_controller_lookup_rejects_unknown_id() -> None:
    client = NetappClient(controllers=_controllers(), http_client=AsyncMock())

    with pytest.raises(KeyError):
        client.controller(42)


async def test_get_nfs_enabled_ips_keeps_only_nfs_data_interfaces() -> None:
    with respx.mock(assert_all_called=True) as router:
        interfaces = router.get(f"{PRIMARY}/network/ip/interfaces").respond(
            200,
            json={
                "records": [
                    {"ip": {"address": "10.1.0.5"}, "services": ["data_core", "data_nfs"]},
                    {"ip": {"address": "10.1.0.6"}, "services": ["data_iscsi"]},
                    {"ip": {"address": "10.1.0.7"}},
                    {"services": ["data_nfs"]},
                ]
            },
        )

        async with httpx.AsyncClient() as http_client:
            addresses = await _client(http_client).get_nfs_enabled_ips(2, "svm1")

    assert addresses == ["10.1.0.5"]
    assert interfaces.calls.last.request.url.params["svm.name"] == "svm1"


async def test_copy_export_policy_waits_for_clone_to_come_online() -> None:
    sleep = AsyncMock()
    with respx.mock(assert_all_called=True) as router:
        lookups = router.get(f"{PRIMARY}/storage/volumes").mock(
            side_effect=[
                httpx.Response(200, json={"records": [{"uuid": "vol-1", "nas": {"export_policy": {"name": "pve"}}}]}),
                httpx.Response(200, json={"records": [{"uuid": "vol-2", "state": "offline"}]}),
                httpx.Response(200, json={"records": [{"uuid": "vol-2", "state": "online"}]}),
            ]
        )
        patch = router.patch(f"{PRIMARY}/storage/volumes/vol-2").respond(202, json={})
        router.get(f"{PRIMARY}/storage/volumes/vol-2").respond(200, json={"nas": {"export_policy": {"name": "pve"}}})

        async with httpx.AsyncClient() as http_client:
            client = _client(http_client, sleep=sleep, clock=lambda: 0.0)
            policy = await client.copy_export_policy(2, source_volume="ds1", target_volume="restore_1")

    assert policy == "pve"
    assert lookups.call_count == 3
    assert lookups.calls[0].request.url.params["fields"] == "nas.export_policy.name"
    assert json.loads(patch.calls.last.request.content) == {"nas": {"export_policy": {"name": "pve"}}}
    sleep.assert_awaited_once_with(1.0)


async def test_copy_export_policy_fails_when_source_has_no_policy() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(return_value=_volume())

        async with httpx.AsyncClient() as http_client:
            with pytest.raises(ServiceUnavailableError, match="has no export policy"):
                await _client(http_client).copy_export_policy(2, source_volume="ds1", target_volume="restore_1")


async def test_set_export_policy_retries_until_read_back_matches() -> None:
    sleep = AsyncMock()
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").respond(
            200, json={"records": [{"uuid": "vol-2", "state": "online"}]}
        )
        patch = router.patch(f"{PRIMARY}/storage/volumes/vol-2").respond(202, json={})
        router.get(f"{PRIMARY}/storage/volumes/vol-2").mock(
            side_effect=[
                httpx.Response(200, json={"nas": {"export_policy": {"name": "default"}}}),
                httpx.Response(200, json={"nas": {"export_policy": {"name": "pve"}}}),
            ]
        )

        async with httpx.AsyncClient() as http_client:
            await _client(http_client, sleep=sleep).set_export_policy(2, "restore_1", "pve")

    assert patch.call_count == 2
    assert sleep.await_count == 1


async def test_get_snapmirror_relation_keeps_known_volumes_when_paths_are_missing() -> None:
    known = SnapMirrorRelation(
        uuid="rel-1",
        source_volume="ds1",
        source_controller_id=2,
        destination_volume="ds1_dst",
        destination_controller_id=3,
    )
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{SECONDARY}/snapmirror/relationships/rel-1").respond(
            200,
            json={"uuid": "rel-1", "state": "snapmirrored", "healthy": True, "transfer": {"state": "success"}},
        )

        async with httpx.AsyncClient() as http_client:
            live = await _client(http_client).get_snapmirror_relation(known)

    assert live.source_volume == "ds1"
    assert live.destination_volume == "ds1_dst"
    assert live.source_controller_id == 2
    assert live.destination_controller_id == 3
    assert live.state == "snapmirrored"
    assert live.last_transfer_state == "success"


async def test_delete_volume_unexports_before_deleting() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(return_value=_volume(name="restore_1"))
        unexport = router.patch(f"{PRIMARY}/storage/volumes/vol-1").respond(202, json={})
        delete = router.delete(f"{PRIMARY}/storage/volumes/vol-1").respond(202, json={})

        async with httpx.AsyncClient() as http_client:
            deleted = await _client(http_client).delete_volume(2, "restore_1")

    assert deleted is True
    assert json.loads(unexport.calls.last.request.content) == {"nas": {"path": ""}}
    assert delete.call_count == 1


async def test_delete_volume_treats_missing_volume_as_deleted() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(return_value=_empty())

        async with httpx.AsyncClient() as http_client:
            assert await _client(http_client).delete_volume(2, "restore_1") is True


async def test_delete_volume_reports_failed_delete() -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{PRIMARY}/storage/volumes").mock(return_value=_volume(name="restore_1"))
        router.patch(f"{PRIMARY}/storage/volumes/vol-1").respond(202, json={})
        router.delete(f"{PRIMARY}/storage/volumes/vol-1").respond(409, json={"error": {"message": "busy"}})

        async with httpx.AsyncClient() as http_client:
            assert await _client(http_client).delete_volume(2, "restore_1") is False
