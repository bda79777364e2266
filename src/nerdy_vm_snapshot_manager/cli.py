from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import click

from .backup import BackupOrchestrator, BackupOrchestratorConfig, BackupRequest
from .config import AppConfig, Inventory, InventoryConfigError, configure_logging, ensure_directories, load_inventory
from .inventory import InventoryCache, InventoryLoader
from .janitor import SnapshotJanitor
from .metadata import BackupMetadataStore
from .models import RESTORE_CREATE_NEW, RESTORE_REPLACE_ORIGINAL, RETENTION_UNITS
from .netapp import NetappClient
from .proxmox import ProxmoxClient
from .remote import ServiceUnavailableError, build_async_client, error_message
from .replication import RelationSynchronizer
from .restore import RestoreOrchestrator, RestoreRequest


@dataclass
class Runtime:
    config: AppConfig
    inventory: Inventory
    metadata_store: BackupMetadataStore
    proxmox: ProxmoxClient
    netapp: NetappClient
    inventory_cache: InventoryCache


@asynccontextmanager
async def open_runtime(config: AppConfig, inventory: Inventory) -> AsyncIterator[Runtime]:
    metadata_store = BackupMetadataStore(config.metadata_db_path)
    metadata_store.initialize()

    async with build_async_client(
        verify_tls=config.verify_tls,
        timeout_seconds=config.http_timeout_seconds,
    ) as proxmox_http, build_async_client(
        verify_tls=config.verify_tls,
        timeout_seconds=config.http_timeout_seconds,
    ) as netapp_http:
        proxmox = ProxmoxClient(http_client=proxmox_http)
        netapp = NetappClient(controllers=inventory.controllers, http_client=netapp_http)
        cache = InventoryCache(
            loader=InventoryLoader(proxmox=proxmox, netapp=netapp, controllers=inventory.controllers),
            ttl_seconds=config.inventory_cache_ttl_seconds,
        )
        yield Runtime(
            config=config,
            inventory=inventory,
            metadata_store=metadata_store,
            proxmox=proxmox,
            netapp=netapp,
            inventory_cache=cache,
        )


def _metadata_store(config: AppConfig) -> BackupMetadataStore:
    ensure_directories(config)
    store = BackupMetadataStore(config.metadata_db_path)
    store.initialize()
    return store


def _load_inventory(config: AppConfig) -> Inventory:
    try:
        return load_inventory(config.inventory_path)
    except InventoryConfigError as error:
        raise click.ClickException(str(error)) from error


@click.group()
@click.option("--inventory", "inventory_path", type=click.Path(path_type=Path), default=None, help="Inventory YAML file.")
@click.option("--db", "db_path", type=click.Path(path_type=Path), default=None, help="Metadata sqlite database.")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR).")
@click.pass_context
def cli(ctx: click.Context, inventory_path: Path | None, db_path: Path | None, log_level: str | None) -> None:
    """Application-aware Proxmox backups on NetApp snapshots."""
    defaults = AppConfig()
    config = AppConfig(
        metadata_db_path=db_path or defaults.metadata_db_path,
        inventory_path=inventory_path or defaults.inventory_path,
        log_level=log_level or defaults.log_level,
    )
    configure_logging(config.log_level, config.log_json)
    ctx.obj = config


@cli.command()
@click.argument("storage")
@click.option("--cluster", "cluster_id", type=int, required=True)
@click.option("--controller", "controller_id", type=int, required=True)
@click.option("--label", default="Manual", show_default=True)
@click.option("--retention-count", type=int, default=7, show_default=True)
@click.option("--retention-unit", type=click.Choice(RETENTION_UNITS), default="Days", show_default=True)
@click.option("--app-aware/--crash-consistent", default=False)
@click.option("--io-freeze", is_flag=True, default=False)
@click.option("--proxmox-snapshot", is_flag=True, default=False)
@click.option("--with-memory", is_flag=True, default=False)
@click.option("--dont-try-suspend", is_flag=True, default=False)
@click.option("--replicate", is_flag=True, default=False)
@click.option("--lock", "enable_locking", is_flag=True, default=False)
@click.option("--lock-count", type=int, default=None)
@click.option("--lock-unit", type=click.Choice(RETENTION_UNITS), default=None)
@click.option("--exclude", "excluded", type=int, multiple=True, help="VM id to leave out; repeatable.")
@click.option("--schedule-id", type=int, default=None)
@click.pass_obj
def backup(
    config: AppConfig,
    storage: str,
    cluster_id: int,
    controller_id: int,
    label: str,
    retention_count: int,
    retention_unit: str,
    app_aware: bool,
    io_freeze: bool,
    proxmox_snapshot: bool,
    with_memory: bool,
    dont_try_suspend: bool,
    replicate: bool,
    enable_locking: bool,
    lock_count: int | None,
    lock_unit: str | None,
    excluded: tuple[int, ...],
    schedule_id: int | None,
) -> None:
    """Back up every VM on STORAGE through a storage snapshot."""
    inventory = _load_inventory(config)
    ensure_directories(config)
    request = BackupRequest(
        storage_name=storage,
        label=label,
        cluster_id=cluster_id,
        controller_id=controller_id,
        retention_count=retention_count,
        retention_unit=retention_unit,
        is_application_aware=app_aware,
        enable_io_freeze=io_freeze,
        use_proxmox_snapshot=proxmox_snapshot,
        with_memory=with_memory,
        dont_try_suspend=dont_try_suspend,
        schedule_id=schedule_id,
        replicate_to_secondary=replicate,
        enable_locking=enable_locking,
        lock_retention_count=lock_count,
        lock_retention_unit=lock_unit,
        excluded_vmids=excluded,
    )

    async def _run() -> bool:
        async with open_runtime(config, inventory) as runtime:
            orchestrator = BackupOrchestrator(
                clusters=inventory.clusters,
                proxmox=runtime.proxmox,
                netapp=runtime.netapp,
                inventory=runtime.inventory_cache,
                metadata_store=runtime.metadata_store,
                config=BackupOrchestratorConfig(
                    snapshot_task_timeout_seconds=config.snapshot_task_timeout_seconds,
                    replication_poll_interval_seconds=config.replication_poll_interval_seconds,
                    replication_timeout_seconds=config.replication_timeout_seconds,
                    timezone=config.timezone,
                ),
            )
            return await orchestrator.start_backup(request)

    succeeded = asyncio.run(_run())
    click.echo("backup completed" if succeeded else "backup failed")
    if not succeeded:
        raise SystemExit(1)


@cli.command()
@click.argument("record_id", type=int)
@click.option("--cluster", "cluster_id", type=int, required=True)
@click.option("--target-host", required=True, help="Hostname or address of the node that receives the VM.")
@click.option("--replace-original", is_flag=True, default=False, help="Destroy the original VM and reuse its id.")
@click.option("--name", "new_vm_name", default=None, help="Name for the restored VM.")
@click.option("--controller", "controller_id", type=int, default=None, help="Clone on this controller instead.")
@click.option("--volume", "volume_name", default=None, help="Clone from this volume, e.g. the SnapMirror destination.")
@click.option("--start-disconnected", is_flag=True, default=False)
@click.option("--link-directory", is_flag=True, default=False, help="Symlink the disk directory instead of renaming it.")
@click.pass_obj
def restore(
    config: AppConfig,
    record_id: int,
    cluster_id: int,
    target_host: str,
    replace_original: bool,
    new_vm_name: str | None,
    controller_id: int | None,
    volume_name: str | None,
    start_disconnected: bool,
    link_directory: bool,
) -> None:
    """Restore the VM of backup record RECORD_ID from its storage snapshot."""
    inventory = _load_inventory(config)
    ensure_directories(config)
    request = RestoreRequest(
        backup_record_id=record_id,
        cluster_id=cluster_id,
        target_host=target_host,
        restore_type=RESTORE_REPLACE_ORIGINAL if replace_original else RESTORE_CREATE_NEW,
        new_vm_name=new_vm_name,
        controller_id=controller_id,
        volume_name=volume_name,
        start_disconnected=start_disconnected,
        link_directory=link_directory,
    )

    async def _run() -> bool:
        async with open_runtime(config, inventory) as runtime:
            orchestrator = RestoreOrchestrator(
                clusters=inventory.clusters,
                proxmox=runtime.proxmox,
                netapp=runtime.netapp,
                metadata_store=runtime.metadata_store,
                inventory=runtime.inventory_cache,
            )
            return await orchestrator.start_restore(request)

    succeeded = asyncio.run(_run())
    click.echo("restore completed" if succeeded else "restore failed")
    if not succeeded:
        raise SystemExit(1)


@cli.command()
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_obj
def jobs(config: AppConfig, limit: int) -> None:
    """List recent jobs."""
    store = _metadata_store(config)
    for job in store.get_recent_jobs(limit):
        suffix = f" ({job.error_message})" if job.error_message else ""
        click.echo(f"{job.id}\t{job.type}\t{job.status}\t{job.related_vm}\t{job.started_at}{suffix}")


@cli.command()
@click.argument("job_id", type=int)
@click.pass_obj
def show(config: AppConfig, job_id: int) -> None:
    """Show a job with its per-VM results and log lines."""
    store = _metadata_store(config)
    job = store.get_job(job_id)
    if job is None:
        raise click.ClickException(f"job {job_id} not found")

    suffix = f" ({job.error_message})" if job.error_message else ""
    click.echo(f"{job.id}\t{job.type}\t{job.status}\t{job.related_vm}{suffix}")
    for result in store.get_vm_results(job_id):
        details = result.error_message or result.reason
        click.echo(f"  VM {result.vmid} {result.vm_name}: {result.status}" + (f" ({details})" if details else ""))
        for entry in store.get_vm_logs(result.id):
            click.echo(f"    {entry.timestamp} [{entry.level}] {entry.message}")


@cli.command()
@click.argument("job_id", type=int)
@click.pass_obj
def cancel(config: AppConfig, job_id: int) -> None:
    """Ask a running job to stop at its next step."""
    store = _metadata_store(config)
    if not store.cancel_job(job_id):
        raise click.ClickException(f"job {job_id} is not running")
    click.echo(f"job {job_id} marked cancelled")


@cli.command()
@click.pass_obj
def janitor(config: AppConfig) -> None:
    """Delete expired snapshots and refresh replication tracking."""
    inventory = _load_inventory(config)
    ensure_directories(config)

    async def _run() -> None:
        async with open_runtime(config, inventory) as runtime:
            sweeper = SnapshotJanitor(netapp=runtime.netapp, metadata_store=runtime.metadata_store)
            report = await sweeper.cleanup_expired()
            tracked = await sweeper.track_snapshots()
            click.echo(
                f"removed={report.removed} kept_for_secondary={report.kept_for_secondary} "
                f"skipped={report.skipped} tracked={tracked}"
            )

    asyncio.run(_run())


@cli.command("sync-relations")
@click.pass_obj
def sync_relations(config: AppConfig) -> None:
    """Refresh stored SnapMirror relations from secondary controllers."""
    inventory = _load_inventory(config)
    ensure_directories(config)

    async def _run() -> None:
        async with open_runtime(config, inventory) as runtime:
            report = await RelationSynchronizer(netapp=runtime.netapp, metadata_store=runtime.metadata_store).sync()
            click.echo(f"stored={report.stored} removed_stale={report.removed_stale}")
            if report.failed_controllers:
                raise click.ClickException(
                    "sync failed for controllers " + ", ".join(str(item) for item in report.failed_controllers)
                )

    asyncio.run(_run())


@cli.command("cluster-status")
@click.option("--cluster", "cluster_id", type=int, required=True)
@click.pass_obj
def cluster_status(config: AppConfig, cluster_id: int) -> None:
    """Show quorum and node health for a cluster."""
    inventory = _load_inventory(config)
    cluster = inventory.clusters.get(cluster_id)
    if cluster is None:
        raise click.ClickException(f"cluster {cluster_id} is not in the inventory")
    ensure_directories(config)

    async def _run() -> None:
        async with open_runtime(config, inventory) as runtime:
            try:
                status = await runtime.proxmox.get_cluster_status(cluster)
            except ServiceUnavailableError as error:
                raise click.ClickException(error_message(error)) from error
            click.echo(status.summary)
            for host in status.offline_hosts:
                click.echo(f"offline: {host}")

    asyncio.run(_run())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
