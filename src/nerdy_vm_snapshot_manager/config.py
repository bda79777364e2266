from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import sys
from typing import Any

import structlog
import yaml

from .models import NetappController, ProxmoxCluster, ProxmoxHost


@dataclass(frozen=True)
class AppConfig:
    metadata_db_path: Path = Path(os.getenv("NVSM_METADATA_DB_PATH", "./data/snapshots.db"))
    inventory_path: Path = Path(os.getenv("NVSM_INVENTORY_PATH", "./inventory.yaml"))
    timezone: str = os.getenv("NVSM_TIMEZONE", "UTC")
    log_level: str = os.getenv("NVSM_LOG_LEVEL", "INFO")
    log_json: bool = os.getenv("NVSM_LOG_JSON", "false").strip().lower() in {"1", "true", "yes"}
    verify_tls: bool = os.getenv("NVSM_VERIFY_TLS", "false").strip().lower() in {"1", "true", "yes"}
    http_timeout_seconds: float = float(os.getenv("NVSM_HTTP_TIMEOUT_SECONDS", "60"))
    inventory_cache_ttl_seconds: int = int(os.getenv("NVSM_INVENTORY_CACHE_TTL_SECONDS", "900"))
    snapshot_task_timeout_seconds: int = int(os.getenv("NVSM_SNAPSHOT_TASK_TIMEOUT_SECONDS", "1200"))
    replication_poll_interval_seconds: int = int(os.getenv("NVSM_REPLICATION_POLL_INTERVAL_SECONDS", "10"))
    replication_timeout_seconds: int = int(os.getenv("NVSM_REPLICATION_TIMEOUT_SECONDS", "7200"))


@dataclass(frozen=True)
class Inventory:
    clusters: dict[int, ProxmoxCluster]
    controllers: dict[int, NetappController]


class InventoryConfigError(RuntimeError):
    """Raised when the inventory file is missing or malformed."""


def ensure_directories(config: AppConfig) -> None:
    config.metadata_db_path.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)
    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def load_inventory(path: Path) -> Inventory:
    if not path.exists():
        raise InventoryConfigError(f"inventory file not found at {path}")

    try:
        with path.open("r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise InventoryConfigError(f"inventory file {path} is not valid YAML: {error}") from error

    return parse_inventory(document)


def parse_inventory(document: dict[str, Any]) -> Inventory:
    if not isinstance(document, dict):
        raise InventoryConfigError("inventory document must be a mapping")

    clusters: dict[int, ProxmoxCluster] = {}
    for entry in document.get("clusters") or []:
        cluster = _parse_cluster(entry)
        if cluster.id in clusters:
            raise InventoryConfigError(f"duplicate cluster id {cluster.id}")
        clusters[cluster.id] = cluster

    controllers: dict[int, NetappController] = {}
    for entry in document.get("controllers") or []:
        controller = _parse_controller(entry)
        if controller.id in controllers:
            raise InventoryConfigError(f"duplicate controller id {controller.id}")
        controllers[controller.id] = controller

    return Inventory(clusters=clusters, controllers=controllers)


def resolve_secret(entry: dict[str, Any], *, owner: str) -> str:
    variable = entry.get("password_env")
    if variable:
        value = os.getenv(str(variable))
        if value is None:
            raise InventoryConfigError(f"{owner}: environment variable {variable} is not set")
        return value

    literal = entry.get("password")
    if literal is None:
        raise InventoryConfigError(f"{owner}: either password_env or password is required")
    return str(literal)


def _parse_cluster(entry: dict[str, Any]) -> ProxmoxCluster:
    cluster_id = _positive_id(entry, owner="cluster")
    owner = f"cluster {cluster_id}"
    hosts = tuple(
        ProxmoxHost(
            hostname=_required(host, "hostname", owner=owner),
            address=_required(host, "address", owner=owner),
        )
        for host in entry.get("hosts") or []
    )
    if not hosts:
        raise InventoryConfigError(f"{owner}: at least one host is required")

    return ProxmoxCluster(
        id=cluster_id,
        name=str(entry.get("name") or f"cluster-{cluster_id}"),
        username=_required(entry, "username", owner=owner),
        password=resolve_secret(entry, owner=owner),
        hosts=hosts,
    )


def _parse_controller(entry: dict[str, Any]) -> NetappController:
    controller_id = _positive_id(entry, owner="controller")
    owner = f"controller {controller_id}"
    return NetappController(
        id=controller_id,
        name=str(entry.get("name") or f"controller-{controller_id}"),
        address=_required(entry, "address", owner=owner),
        username=_required(entry, "username", owner=owner),
        password=resolve_secret(entry, owner=owner),
        is_primary=bool(entry.get("is_primary", True)),
        selected_volumes=tuple(str(volume) for volume in entry.get("selected_volumes") or []),
    )


def _positive_id(entry: dict[str, Any], *, owner: str) -> int:
    if not isinstance(entry, dict):
        raise InventoryConfigError(f"{owner} entries must be mappings")
    raw_id = entry.get("id")
    if isinstance(raw_id, bool) or not isinstance(raw_id, int) or raw_id <= 0:
        raise InventoryConfigError(f"{owner} id must be a positive integer, got {raw_id!r}")
    return raw_id


def _required(entry: dict[str, Any], key: str, *, owner: str) -> str:
    value = str(entry.get(key) or "").strip()
    if not value:
        raise InventoryConfigError(f"{owner}: {key} is required")
    return value
