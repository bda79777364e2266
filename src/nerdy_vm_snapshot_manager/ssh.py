from __future__ import annotations

import asyncio
from dataclasses import dataclass
import re
import shlex
from typing import Protocol
import uuid

import paramiko

DEFAULT_SSH_TIMEOUT_SECONDS = 300
VMID_PATTERN = re.compile(r"^\d+$")


@dataclass(frozen=True)
class RemoteExecResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProxmoxSshError(RuntimeError):
    """Raised when an SSH session to a hypervisor node cannot be established or completed."""


class RemoteExecutor(Protocol):
    async def run(
        self,
        *,
        host: str,
        username: str,
        password: str,
        command: str,
        timeout_seconds: float = DEFAULT_SSH_TIMEOUT_SECONDS,
    ) -> RemoteExecResult: ...


class ParamikoExecutor:
    def __init__(self, *, port: int = 22, connect_timeout_seconds: float = 30) -> None:
        self.port = port
        self.connect_timeout_seconds = connect_timeout_seconds

    async def run(
        self,
        *,
        host: str,
        username: str,
        password: str,
        command: str,
        timeout_seconds: float = DEFAULT_SSH_TIMEOUT_SECONDS,
    ) -> RemoteExecResult:
        return await asyncio.to_thread(
            self._run_blocking,
            host=host,
            username=username,
            password=password,
            command=command,
            timeout_seconds=timeout_seconds,
        )

    def _run_blocking(
        self,
        *,
        host: str,
        username: str,
        password: str,
        command: str,
        timeout_seconds: float,
    ) -> RemoteExecResult:
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                hostname=host,
                port=self.port,
                username=username,
                password=password,
                timeout=self.connect_timeout_seconds,
                allow_agent=False,
                look_for_keys=False,
            )
            _, stdout, stderr = ssh.exec_command(command, timeout=timeout_seconds)
            exit_code = stdout.channel.recv_exit_status()
            return RemoteExecResult(
                exit_code=exit_code,
                stdout=stdout.read().decode("utf-8", errors="replace"),
                stderr=stderr.read().decode("utf-8", errors="replace"),
            )
        except (paramiko.SSHException, OSError) as error:
            message = str(error).strip() or error.__class__.__name__
            raise ProxmoxSshError(f"ssh to {username}@{host} failed: {message}") from error
        finally:
            ssh.close()


def vm_config_path(vmid: int) -> str:
    return f"/etc/pve/qemu-server/{int(vmid)}.conf"


def raw_config_command(vmid: int) -> str:
    return f"cat {vm_config_path(vmid)}"


def heredoc_command(script: str) -> str:
    normalized = re.sub(r"\r\n?", "\n", script)
    marker = f"EOF_{uuid.uuid4().hex}"
    return f"cat <<'{marker}' | tr -d '\\r' | bash\n{normalized}\n{marker}\n"


def write_config_command(vmid: int, content: str) -> str:
    """Write ``content`` to the VM's config file; refuses to overwrite an existing one."""
    normalized = re.sub(r"\r\n?", "\n", content).rstrip("\n")
    marker = f"EOF_{uuid.uuid4().hex}"
    path = shlex.quote(vm_config_path(vmid))
    return (
        f"if [ -e {path} ]; then echo \"ERR: config already exists: {vm_config_path(vmid)}\" >&2; exit 4; fi\n"
        f"cat > {path} <<'{marker}'\n{normalized}\n{marker}\n"
    )


def build_rename_script(*, storage: str, old_vmid: str, new_vmid: str) -> str:
    _validate_vmid(old_vmid)
    _validate_vmid(new_vmid)
    lines = [
        "set -euo pipefail",
        "export LC_ALL=C",
        f"storage={shlex.quote(storage)}",
        f"oldid={shlex.quote(old_vmid)}",
        f"newid={shlex.quote(new_vmid)}",
        "",
        *_base_resolution_lines(candidates=("$oldid", "$newid")),
        "",
        'src="$base/images/$oldid"',
        'dst="$base/images/$newid"',
        "",
        'if [ ! -d "$src" ] && [ -d "$dst" ]; then',
        '  echo "OK: already renamed to $dst (base=$base)"',
        "  exit 0",
        "fi",
        'if [ ! -d "$src" ]; then',
        '  echo "ERR: source dir not found: $src" >&2',
        "  exit 3",
        "fi",
        'if [ -e "$dst" ]; then',
        '  echo "ERR: destination already exists: $dst" >&2',
        "  exit 4",
        "fi",
        "",
        'mv "$src" "$dst"',
        'cd "$dst"',
        "",
        "find . -maxdepth 1 -type f -print0 | while IFS= read -r -d '' p; do",
        '  b="$(basename "$p")"',
        '  case "$b" in *"$oldid"*)',
        '    nb="${b//$oldid/$newid}"',
        '    if [ "$b" != "$nb" ]; then',
        '      mv -T -- "$p" "$(dirname "$p")/$nb"',
        '      echo "REN: $p -> $(dirname "$p")/$nb"',
        "    fi",
        "  ;; esac",
        "done",
        "",
        'echo "OK: renamed directory and file names in $dst (base=$base)"',
    ]
    return "\n".join(lines)


def build_symlink_script(*, storage: str, link_vmid: str, target_vmid: str) -> str:
    _validate_vmid(link_vmid)
    _validate_vmid(target_vmid)
    lines = [
        "set -euo pipefail",
        "export LC_ALL=C",
        f"storage={shlex.quote(storage)}",
        f"linkid={shlex.quote(link_vmid)}",
        f"targetid={shlex.quote(target_vmid)}",
        "",
        *_base_resolution_lines(candidates=("$targetid",)),
        "",
        'target="$base/images/$targetid"',
        'link="$base/images/$linkid"',
        "",
        'if [ -L "$link" ] && [ "$(readlink "$link")" = "$target" ]; then',
        '  echo "OK: link already present: $link -> $target"',
        "  exit 0",
        "fi",
        'if [ ! -d "$target" ]; then',
        '  echo "ERR: link target not found: $target" >&2',
        "  exit 3",
        "fi",
        'if [ -e "$link" ] || [ -L "$link" ]; then',
        '  echo "ERR: link path already exists: $link" >&2',
        "  exit 4",
        "fi",
        "",
        'ln -s "$target" "$link"',
        'echo "OK: linked $link -> $target (base=$base)"',
    ]
    return "\n".join(lines)


def _base_resolution_lines(*, candidates: tuple[str, ...]) -> list[str]:
    mount_checks = " || ".join(f'[ -d "/mnt/pve/$storage/images/{item}" ]' for item in candidates)
    conf_checks = " || ".join(f'[ -d "$conf_path/images/{item}" ]' for item in candidates)
    return [
        'base=""',
        f"if {mount_checks}; then",
        '  base="/mnt/pve/$storage"',
        "else",
        "  conf_path=\"$(pvesm config \"$storage\" 2>/dev/null | awk -F': ' '/^path: /{print $2}')\" || true",
        f'  if [ -n "$conf_path" ] && {{ {conf_checks}; }}; then',
        '    base="$conf_path"',
        "  fi",
        "fi",
        'if [ -z "$base" ]; then',
        "  echo \"ERR: could not resolve storage base path for '$storage'\" >&2",
        "  exit 2",
        "fi",
    ]


def _validate_vmid(value: str) -> None:
    if not VMID_PATTERN.match(value):
        raise ValueError(f"vmid must be numeric, got {value!r}")
