from __future__ import annotations

import json
import re
from typing import Any, Mapping

DISK_KEY_PATTERN = re.compile(r"^(scsi|virtio|ide|sata|efidisk|tpmstate)\d+$", re.IGNORECASE)
RESTORE_DISK_KEY_PATTERN = re.compile(r"^(scsi|virtio|ide|sata|efidisk|tpmstate|unused)\d+$", re.IGNORECASE)
NET_KEY_PATTERN = re.compile(r"^net\d+$", re.IGNORECASE)
LINK_DOWN_PATTERN = re.compile(r"\blink_down=\d")
SECTION_PATTERN = re.compile(r"^\[(.+)\]$")
DROPPED_RESTORE_KEYS = ("meta", "digest")


def is_disk_key(key: str) -> bool:
    return bool(DISK_KEY_PATTERN.match(key))


def is_optical_value(value: str) -> bool:
    normalized = value.strip().lower()
    if "media=cdrom" in normalized:
        return True
    volume = normalized.split(",", 1)[0]
    return volume.endswith(".iso")


def storage_from_disk_value(value: str) -> str | None:
    """Return the storage name of a ``storage:path[,options]`` disk value, or None for optical or unassigned drives."""
    if not value or is_optical_value(value):
        return None

    volume = value.split(",", 1)[0].strip()
    storage, separator, path = volume.partition(":")
    if not separator or not storage.strip() or not path.strip():
        return None
    return storage.strip()


def storages_for_config(config: Mapping[str, Any]) -> set[str]:
    storages: set[str] = set()
    for key, value in config.items():
        if not is_disk_key(str(key)) or not isinstance(value, str):
            continue
        storage = storage_from_disk_value(value)
        if storage:
            storages.add(storage)
    return storages


def parse_raw_vm_config(raw: str) -> tuple[dict[str, str], dict[str, dict[str, str]]]:
    config: dict[str, str] = {}
    snapshots: dict[str, dict[str, str]] = {}
    current = config

    for line in raw.split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        section = SECTION_PATTERN.match(stripped)
        if section:
            current = {}
            snapshots[section.group(1)] = current
            continue

        key, separator, value = stripped.partition(":")
        if not separator:
            continue
        current[key.strip()] = value.strip()

    return config, snapshots


def raw_config_to_json(raw: str) -> str:
    config, snapshots = parse_raw_vm_config(raw)
    document: dict[str, Any] = {"config": config}
    if snapshots:
        document["snapshots"] = snapshots
    return json.dumps(document, indent=2)


def render_raw_vm_config(config: Mapping[str, str], snapshots: Mapping[str, Mapping[str, str]] | None = None) -> str:
    lines = [f"{key}: {value}" for key, value in config.items()]
    for name, section in (snapshots or {}).items():
        lines.append("")
        lines.append(f"[{name}]")
        lines.extend(f"{key}: {value}" for key, value in section.items())
    return "\n".join(lines) + "\n"


def rewrite_disk_value(
    value: str,
    *,
    old_storage: str,
    new_storage: str,
    old_vmid: int,
    new_vmid: int,
    rename_files: bool = True,
) -> str:
    """Point a ``storage:path[,options]`` disk value at the clone storage and, optionally, the new VM id.

    Values on other storages are returned unchanged. With ``rename_files`` off only
    the directory prefix moves to the new id, matching a symlinked directory whose
    file names still carry the old id.
    """
    volume, comma, options = value.partition(",")
    storage, colon, path = volume.partition(":")
    if not colon or storage.strip().lower() != old_storage.lower():
        return value

    if old_vmid != new_vmid:
        prefix = f"{old_vmid}/"
        if path.startswith(prefix):
            path = f"{new_vmid}/{path[len(prefix):]}"
        if rename_files:
            path = path.replace(f"vm-{old_vmid}-", f"vm-{new_vmid}-")
    return f"{new_storage}:{path}{comma}{options}"


def build_restored_config(
    configuration_json: str,
    *,
    old_storage: str,
    new_storage: str,
    old_vmid: int,
    new_vmid: int,
    name: str | None = None,
    start_disconnected: bool = False,
    rename_files: bool = True,
) -> str:
    """Turn a captured configuration document into raw ``qemu-server`` text for the restored VM."""
    try:
        document = json.loads(configuration_json or "{}")
    except json.JSONDecodeError as error:
        raise ValueError(f"stored VM configuration is not valid JSON: {error}") from error

    config = document.get("config") if isinstance(document, dict) else None
    if not isinstance(config, dict) or not config:
        raise ValueError("backup record carries no VM configuration")

    def _rewrite(section: Mapping[str, Any]) -> dict[str, str]:
        rewritten: dict[str, str] = {}
        for key, raw_value in section.items():
            value = str(raw_value)
            is_volume = key == "vmstate" or (
                RESTORE_DISK_KEY_PATTERN.match(key) is not None
                and (not is_optical_value(value) or "cloudinit" in value)
            )
            if is_volume:
                value = rewrite_disk_value(
                    value,
                    old_storage=old_storage,
                    new_storage=new_storage,
                    old_vmid=old_vmid,
                    new_vmid=new_vmid,
                    rename_files=rename_files,
                )
            elif start_disconnected and NET_KEY_PATTERN.match(key):
                value = _link_down(value)
            rewritten[key] = value
        return rewritten

    restored = _rewrite(config)
    for key in DROPPED_RESTORE_KEYS:
        restored.pop(key, None)
    restored["protection"] = "0"
    if name and name.strip():
        restored["name"] = name.strip()

    snapshots = document.get("snapshots") or {}
    restored_snapshots = {
        section_name: _rewrite(section)
        for section_name, section in snapshots.items()
        if isinstance(section, dict)
    }
    return render_raw_vm_config(restored, restored_snapshots)


def _link_down(value: str) -> str:
    if LINK_DOWN_PATTERN.search(value):
        return LINK_DOWN_PATTERN.sub("link_down=1", value)
    return f"{value},link_down=1"
