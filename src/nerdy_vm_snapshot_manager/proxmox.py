from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import time
from typing import Any, Awaitable, Callable, Iterable

import httpx
import structlog

from .models import ClusterStatus, ProxmoxCluster, ProxmoxHost, ProxmoxVM, VmStatus
from .polling import PollOutcome, poll_until
from .remote import ServiceUnavailableError, error_message, raise_for_unavailable, response_json
from .ssh import (
    ParamikoExecutor,
    ProxmoxSshError,
    RemoteExecutor,
    build_rename_script,
    build_symlink_script,
    heredoc_command,
    raw_config_command,
    write_config_command,
)
from .vmconfig import raw_config_to_json, storages_for_config

PROXMOX_API_PORT = 8006
TASK_POLL_INTERVAL_SECONDS = 5.0
VM_STOP_TIMEOUT_SECONDS = 300.0
MOUNT_VERIFY_TIMEOUT_SECONDS = 30.0
NFS_STORAGE_CONTENT = "images,backup,iso,vztmpl"
SCRIPT_TIMEOUT_SECONDS = 300
AUTH_FAILURE_STATUSES = frozenset({401, 403})

logger = structlog.get_logger(__name__)


@dataclass
class ProxmoxSession:
    ticket: str = ""
    csrf_token: str = ""
    generation: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.ticket)


class ProxmoxClient:
    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        ssh_executor: RemoteExecutor | None = None,
        task_poll_interval: float = TASK_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.http_client = http_client
        self.ssh_executor = ssh_executor or ParamikoExecutor()
        self.task_poll_interval = task_poll_interval
        self._clock = clock
        self._sleep = sleep
        self._sessions: dict[int, ProxmoxSession] = {}
        self.login_count = 0

    # Session handling

    def _session(self, cluster: ProxmoxCluster) -> ProxmoxSession:
        session = self._sessions.get(cluster.id)
        if session is None:
            session = ProxmoxSession()
            self._sessions[cluster.id] = session
        return session

    async def _ensure_session(self, cluster: ProxmoxCluster) -> ProxmoxSession:
        session = self._session(cluster)
        if not session.is_authenticated:
            await self._refresh_session(cluster, stale_generation=session.generation)
        return session

    async def _refresh_session(self, cluster: ProxmoxCluster, *, stale_generation: int) -> None:
        session = self._session(cluster)
        async with session.lock:
            # Another caller already logged in again while we waited for the lock.
            if session.generation != stale_generation and session.is_authenticated:
                return
            ticket, csrf_token = await self._login(cluster)
            session.ticket = ticket
            session.csrf_token = csrf_token
            session.generation += 1

    async def _login(self, cluster: ProxmoxCluster) -> tuple[str, str]:
        self.login_count += 1
        failures: list[str] = []
        for host in cluster.hosts:
            url = _api_url(host.address, "access/ticket")
            try:
                response = await self.http_client.post(
                    url,
                    data={"username": cluster.username, "password": cluster.password},
                )
            except httpx.HTTPError as error:
                failures.append(f"{host.hostname}: {error_message(error)}")
                continue

            if not response.is_success:
                failures.append(f"{host.hostname}: HTTP {response.status_code}")
                continue

            data = response_json(response).get("data") or {}
            ticket = str(data.get("ticket") or "")
            csrf_token = str(data.get("CSRFPreventionToken") or "")
            if ticket:
                logger.debug("proxmox_login_succeeded", cluster_id=cluster.id, host=host.hostname)
                return ticket, csrf_token
            failures.append(f"{host.hostname}: login response carried no ticket")

        raise ServiceUnavailableError(
            f"Proxmox login failed for cluster '{cluster.name}': {'; '.join(failures) or 'no hosts configured'}",
            status_code=401,
        )

    async def send_with_refresh(
        self,
        cluster: ProxmoxCluster,
        method: str,
        address: str,
        path: str,
        *,
        data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        session = await self._ensure_session(cluster)
        url = _api_url(address, path)

        generation = session.generation
        response = await self._send(session, method, url, data=data)
        if response.status_code in AUTH_FAILURE_STATUSES:
            logger.info("proxmox_session_refresh", cluster_id=cluster.id, status=response.status_code, path=path)
            await self._refresh_session(cluster, stale_generation=generation)
            response = await self._send(session, method, url, data=data)
            if response.status_code in AUTH_FAILURE_STATUSES:
                raise ServiceUnavailableError(
                    f"Proxmox rejected credentials for {method} {path} after re-authentication",
                    status_code=response.status_code,
                )

        raise_for_unavailable(response)
        return response

    async def _send(
        self,
        session: ProxmoxSession,
        method: str,
        url: str,
        *,
        data: dict[str, Any] | None,
    ) -> httpx.Response:
        headers = {
            "Cookie": f"PVEAuthCookie={session.ticket}",
            "CSRFPreventionToken": session.csrf_token,
        }
        try:
            return await self.http_client.request(method, url, data=data, headers=headers)
        except httpx.HTTPError as error:
            raise ServiceUnavailableError(f"{method} {url} failed: {error_message(error)}") from error

    async def _get_data(self, cluster: ProxmoxCluster, address: str, path: str) -> Any:
        response = await self.send_with_refresh(cluster, "GET", address, path)
        return response_json(response).get("data")

    # VM lifecycle

    async def get_vm_status(self, cluster: ProxmoxCluster, vm: ProxmoxVM) -> VmStatus:
        data = await self._get_data(cluster, vm.host_address, f"nodes/{vm.host_name}/qemu/{vm.vmid}/status/current")
        data = data or {}
        return VmStatus(status=str(data.get("status") or ""), qmp_status=str(data.get("qmpstatus") or ""))

    async def pause_vm(self, cluster: ProxmoxCluster, vm: ProxmoxVM) -> bool:
        status = await self.get_vm_status(cluster, vm)
        if not status.is_running or status.is_paused:
            logger.info("vm_pause_skipped", vmid=vm.vmid, status=status.status, qmp_status=status.qmp_status)
            return False
        await self.send_with_refresh(cluster, "POST", vm.host_address, f"nodes/{vm.host_name}/qemu/{vm.vmid}/status/suspend")
        return True

    async def unpause_vm(self, cluster: ProxmoxCluster, vm: ProxmoxVM) -> bool:
        status = await self.get_vm_status(cluster, vm)
        if not status.is_paused:
            return False
        await self.send_with_refresh(cluster, "POST", vm.host_address, f"nodes/{vm.host_name}/qemu/{vm.vmid}/status/resume")
        return True

    async def create_snapshot(
        self,
        cluster: ProxmoxCluster,
        vm: ProxmoxVM,
        *,
        name: str,
        description: str = "",
        with_memory: bool = False,
    ) -> str:
        response = await self.send_with_refresh(
            cluster,
            "POST",
            vm.host_address,
            f"nodes/{vm.host_name}/qemu/{vm.vmid}/snapshot",
            data={"snapname": name, "description": description, "vmstate": "1" if with_memory else "0"},
        )
        upid = response_json(response).get("data")
        if not upid:
            raise ServiceUnavailableError(f"snapshot request for VM {vm.vmid} returned no task id")
        return str(upid)

    async def delete_snapshot(self, cluster: ProxmoxCluster, vm: ProxmoxVM, name: str) -> str | None:
        response = await self.send_with_refresh(
            cluster,
            "DELETE",
            vm.host_address,
            f"nodes/{vm.host_name}/qemu/{vm.vmid}/snapshot/{name}",
        )
        upid = response_json(response).get("data")
        return str(upid) if upid else None

    async def wait_for_task(
        self,
        cluster: ProxmoxCluster,
        host: ProxmoxHost | ProxmoxVM,
        upid: str,
        *,
        timeout_seconds: float,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        node, address = _node_and_address(host)
        exit_status: dict[str, str | None] = {}

        async def _task_stopped() -> bool:
            try:
                data = await self._get_data(cluster, address, f"nodes/{node}/tasks/{upid}/status") or {}
            except ServiceUnavailableError as error:
                logger.warning("task_status_check_failed", upid=upid, error=error_message(error))
                return False
            if str(data.get("status") or "").lower() != "stopped":
                return False
            exit_status["value"] = data.get("exitstatus")
            return True

        outcome = await poll_until(
            _task_stopped,
            interval=self.task_poll_interval,
            ceiling=timeout_seconds,
            cancel_event=cancel_event,
            clock=self._clock,
            sleep=self._sleep,
        )
        if outcome is PollOutcome.TIMED_OUT:
            logger.warning("task_wait_timed_out", upid=upid, timeout_seconds=timeout_seconds)
            return False

        exit_value = str(exit_status.get("value") or "")
        ok = exit_value.upper().startswith("OK")
        if not ok:
            logger.warning("task_failed", upid=upid, exit_status=exit_value or None)
        return ok

    async def shutdown_and_remove_vm(
        self,
        cluster: ProxmoxCluster,
        vm: ProxmoxVM,
        *,
        timeout_seconds: float = VM_STOP_TIMEOUT_SECONDS,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Stop the VM if needed, wait until it reports stopped, then destroy it with its disks purged."""
        base = f"nodes/{vm.host_name}/qemu/{vm.vmid}"
        status = await self.get_vm_status(cluster, vm)
        if status.status != "stopped":
            await self.send_with_refresh(cluster, "POST", vm.host_address, f"{base}/status/stop")

            async def _stopped() -> bool:
                return (await self.get_vm_status(cluster, vm)).status == "stopped"

            outcome = await poll_until(
                _stopped,
                interval=self.task_poll_interval,
                ceiling=timeout_seconds,
                cancel_event=cancel_event,
                clock=self._clock,
                sleep=self._sleep,
            )
            if outcome is PollOutcome.TIMED_OUT:
                raise ServiceUnavailableError(f"VM {vm.vmid} did not stop within {timeout_seconds:g} seconds")

        response = await self.send_with_refresh(cluster, "DELETE", vm.host_address, f"{base}?purge=1")
        upid = response_json(response).get("data")
        if upid and not await self.wait_for_task(
            cluster,
            vm,
            str(upid),
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
        ):
            raise ServiceUnavailableError(f"removing VM {vm.vmid} did not finish OK")
        logger.info("vm_removed", vmid=vm.vmid, host=vm.host_name)

    async def get_next_vmid(self, cluster: ProxmoxCluster, host: ProxmoxHost) -> int:
        data = await self._get_data(cluster, host.address, "cluster/nextid")
        try:
            return int(data)
        except (TypeError, ValueError) as error:
            raise ServiceUnavailableError(f"cluster/nextid returned an unusable id: {data!r}") from error

    # Storage mounts

    async def mount_nfs_storage(
        self,
        cluster: ProxmoxCluster,
        host: ProxmoxHost,
        *,
        storage: str,
        server: str,
        export: str,
        content: str = NFS_STORAGE_CONTENT,
        options: str = "vers=3",
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        try:
            await self.send_with_refresh(
                cluster,
                "POST",
                host.address,
                "storage",
                data={
                    "type": "nfs",
                    "storage": storage,
                    "server": server,
                    "export": export,
                    "content": content,
                    "options": options,
                    "nodes": host.hostname,
                },
            )
        except ServiceUnavailableError as error:
            # The definition may already exist; the status check below decides.
            logger.warning("nfs_storage_create_failed", storage=storage, host=host.hostname, error=error_message(error))

        async def _mounted() -> bool:
            try:
                data = await self._get_data(cluster, host.address, f"nodes/{host.hostname}/storage/{storage}/status") or {}
                if not _storage_available(data):
                    return False
                await self._get_data(cluster, host.address, f"nodes/{host.hostname}/storage/{storage}/content")
            except ServiceUnavailableError as error:
                logger.debug("nfs_storage_not_ready", storage=storage, host=host.hostname, error=error_message(error))
                return False
            return True

        outcome = await poll_until(
            _mounted,
            interval=1.0,
            ceiling=MOUNT_VERIFY_TIMEOUT_SECONDS,
            cancel_event=cancel_event,
            clock=self._clock,
            sleep=self._sleep,
        )
        mounted = outcome is not PollOutcome.TIMED_OUT
        if not mounted:
            logger.error("nfs_storage_mount_unverified", storage=storage, host=host.hostname)
        return mounted

    async def unmount_nfs_storage(self, cluster: ProxmoxCluster, host: ProxmoxHost, storage: str) -> None:
        await self.send_with_refresh(cluster, "DELETE", host.address, f"storage/{storage}")
        logger.info("nfs_storage_removed", storage=storage, host=host.hostname)

    # Discovery

    async def get_vm_config(self, cluster: ProxmoxCluster, host: ProxmoxHost, vmid: int) -> dict[str, Any]:
        data = await self._get_data(cluster, host.address, f"nodes/{host.hostname}/qemu/{vmid}/config")
        return data if isinstance(data, dict) else {}

    async def list_nfs_storages(self, cluster: ProxmoxCluster, host: ProxmoxHost) -> list[str]:
        data = await self._get_data(cluster, host.address, f"nodes/{host.hostname}/storage")
        names: list[str] = []
        for storage in data or []:
            if str(storage.get("type") or "").lower() != "nfs":
                continue
            name = str(storage.get("storage") or "").strip()
            if name and name not in names:
                names.append(name)
        return names

    async def list_vms_on_node(self, cluster: ProxmoxCluster, host: ProxmoxHost) -> list[ProxmoxVM]:
        data = await self._get_data(cluster, host.address, f"nodes/{host.hostname}/qemu")
        vms: list[ProxmoxVM] = []
        for entry in data or []:
            vmid = entry.get("vmid")
            if isinstance(vmid, bool) or not isinstance(vmid, int):
                continue
            vms.append(
                ProxmoxVM(
                    vmid=vmid,
                    name=str(entry.get("name") or f"VM {vmid}"),
                    host_name=host.hostname,
                    host_address=host.address,
                )
            )
        return sorted(vms, key=lambda vm: vm.vmid)

    async def get_vms_by_storage(
        self,
        cluster: ProxmoxCluster,
        storages: Iterable[str],
    ) -> dict[str, list[ProxmoxVM]]:
        result: dict[str, list[ProxmoxVM]] = {name: [] for name in storages}
        lookup = {name.lower(): name for name in result}
        if not lookup:
            return result

        for host in cluster.hosts:
            for vm in await self.list_vms_on_node(cluster, host):
                config = await self.get_vm_config(cluster, host, vm.vmid)
                for storage in storages_for_config(config):
                    requested = lookup.get(storage.lower())
                    if requested is None:
                        continue
                    if all(existing.vmid != vm.vmid for existing in result[requested]):
                        result[requested].append(vm)
        return result

    async def list_mounted_nfs_storages(self, cluster: ProxmoxCluster) -> set[str]:
        names: set[str] = set()
        for host in cluster.hosts:
            names.update(await self.list_nfs_storages(cluster, host))
        return names

    async def get_cluster_status(self, cluster: ProxmoxCluster) -> ClusterStatus:
        last_error: ServiceUnavailableError | None = None
        data: list[dict[str, Any]] | None = None
        for host in cluster.hosts:
            try:
                data = await self._get_data(cluster, host.address, "cluster/status") or []
                break
            except ServiceUnavailableError as error:
                last_error = error
        if data is None:
            raise last_error or ServiceUnavailableError(f"cluster '{cluster.name}' has no hosts")
        return summarize_cluster_status(data)

    # SSH channel

    async def capture_vm_configuration(self, cluster: ProxmoxCluster, vm: ProxmoxVM) -> str:
        result = await self.ssh_executor.run(
            host=vm.host_address,
            username=cluster.ssh_username,
            password=cluster.password,
            command=raw_config_command(vm.vmid),
        )
        if not result.ok:
            raise ProxmoxSshError(
                f"reading config for VM {vm.vmid} on {vm.host_name} failed "
                f"(exit {result.exit_code}): {result.stderr.strip()}"
            )
        return raw_config_to_json(result.stdout)

    async def rename_vm_directory(
        self,
        cluster: ProxmoxCluster,
        host: ProxmoxHost,
        *,
        storage: str,
        old_vmid: str,
        new_vmid: str,
    ) -> bool:
        if old_vmid == new_vmid:
            return True
        script = build_rename_script(storage=storage, old_vmid=old_vmid, new_vmid=new_vmid)
        return await self._run_script(cluster, host, script, action="rename_vm_directory")

    async def link_vm_directory(
        self,
        cluster: ProxmoxCluster,
        host: ProxmoxHost,
        *,
        storage: str,
        link_vmid: str,
        target_vmid: str,
    ) -> bool:
        if link_vmid == target_vmid:
            return True
        script = build_symlink_script(storage=storage, link_vmid=link_vmid, target_vmid=target_vmid)
        return await self._run_script(cluster, host, script, action="link_vm_directory")

    async def write_vm_config(self, cluster: ProxmoxCluster, host: ProxmoxHost, vmid: int, content: str) -> bool:
        result = await self.ssh_executor.run(
            host=host.address,
            username=cluster.ssh_username,
            password=cluster.password,
            command=write_config_command(vmid, content),
            timeout_seconds=SCRIPT_TIMEOUT_SECONDS,
        )
        if not result.ok:
            logger.error(
                "vm_config_write_failed",
                vmid=vmid,
                host=host.hostname,
                exit_code=result.exit_code,
                stderr=result.stderr.strip(),
            )
            return False
        logger.info("vm_config_written", vmid=vmid, host=host.hostname)
        return True

    async def _run_script(self, cluster: ProxmoxCluster, host: ProxmoxHost, script: str, *, action: str) -> bool:
        result = await self.ssh_executor.run(
            host=host.address,
            username=cluster.ssh_username,
            password=cluster.password,
            command=heredoc_command(script),
            timeout_seconds=SCRIPT_TIMEOUT_SECONDS,
        )
        if not result.ok:
            logger.error(
                "remote_script_failed",
                action=action,
                host=host.hostname,
                exit_code=result.exit_code,
                stderr=result.stderr.strip(),
                stdout=result.stdout.strip(),
            )
            return False
        logger.info("remote_script_succeeded", action=action, host=host.hostname, stdout=result.stdout.strip())
        return True


def summarize_cluster_status(entries: list[dict[str, Any]]) -> ClusterStatus:
    has_quorum = False
    online: list[str] = []
    offline: list[str] = []
    for entry in entries:
        entry_type = str(entry.get("type") or "")
        if entry_type == "cluster":
            has_quorum = _truthy(entry.get("quorate"))
        elif entry_type == "node":
            name = str(entry.get("name") or "")
            (online if _truthy(entry.get("online")) else offline).append(name)

    # A standalone node reports no cluster entry and is its own quorum.
    if not any(str(entry.get("type") or "") == "cluster" for entry in entries):
        has_quorum = bool(online)

    if not has_quorum:
        summary = "Cluster lost quorum!"
    elif offline:
        summary = f"Quorum ok, but {len(offline)} node(s) offline"
    else:
        summary = "Cluster healthy (all nodes online)"

    return ClusterStatus(
        has_quorum=has_quorum,
        online_hosts=tuple(online),
        offline_hosts=tuple(offline),
        summary=summary,
    )


def _storage_available(data: dict[str, Any]) -> bool:
    try:
        total = int(data.get("total") or 0)
    except (TypeError, ValueError):
        total = 0
    state = str(data.get("state") or "").lower()
    return _truthy(data.get("active")) and total > 0 and state in {"", "available"}


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip() in {"1", "true", "True"}
    return bool(value)


def _node_and_address(target: ProxmoxHost | ProxmoxVM) -> tuple[str, str]:
    if isinstance(target, ProxmoxVM):
        return target.host_name, target.host_address
    return target.hostname, target.address


def _api_url(address: str, path: str) -> str:
    return f"https://{address}:{PROXMOX_API_PORT}/api2/json/{path.lstrip('/')}"
