from __future__ import annotations

from dataclasses import astuple, fields
from datetime import UTC, datetime, timedelta
from pathlib import Path
import sqlite3
from typing import Any, Iterable

from .models import (
    JOB_STATUS_CANCELLED,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_RUNNING,
    TERMINAL_JOB_STATUSES,
    VM_RESULT_FAILED,
    VM_RESULT_PENDING,
    BackupRecord,
    Job,
    JobVmLog,
    JobVmResult,
    NetappSnapshot,
    SnapMirrorRelation,
)

CANCELLED_MESSAGE = "Job was cancelled."

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        related_vm TEXT NOT NULL,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        error_message TEXT,
        payload_json TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS backup_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL REFERENCES jobs(id),
        vmid INTEGER NOT NULL,
        vm_name TEXT NOT NULL,
        host_name TEXT NOT NULL,
        storage_name TEXT NOT NULL,
        snapshot_name TEXT NOT NULL,
        controller_id INTEGER NOT NULL,
        label TEXT NOT NULL,
        retention_count INTEGER NOT NULL,
        retention_unit TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        configuration_json TEXT NOT NULL,
        schedule_id INTEGER,
        is_application_aware INTEGER NOT NULL,
        enable_io_freeze INTEGER NOT NULL,
        use_proxmox_snapshot INTEGER NOT NULL,
        with_memory INTEGER NOT NULL,
        replicate_to_secondary INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS netapp_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL REFERENCES jobs(id),
        snapshot_name TEXT NOT NULL,
        primary_volume TEXT NOT NULL,
        primary_controller_id INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        snapmirror_label TEXT NOT NULL,
        secondary_volume TEXT,
        secondary_controller_id INTEGER,
        exists_on_primary INTEGER NOT NULL,
        exists_on_secondary INTEGER NOT NULL,
        is_replicated INTEGER NOT NULL,
        last_checked TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS snapmirror_relations (
        uuid TEXT PRIMARY KEY,
        source_volume TEXT NOT NULL,
        source_controller_id INTEGER NOT NULL,
        destination_volume TEXT NOT NULL,
        destination_controller_id INTEGER NOT NULL,
        source_svm TEXT NOT NULL,
        destination_svm TEXT NOT NULL,
        relationship_type TEXT NOT NULL,
        policy_name TEXT NOT NULL,
        policy_type TEXT NOT NULL,
        state TEXT NOT NULL,
        healthy INTEGER NOT NULL,
        lag_time TEXT NOT NULL,
        last_transfer_state TEXT NOT NULL,
        last_transfer_end_time TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_vm_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL REFERENCES jobs(id),
        vmid INTEGER NOT NULL,
        vm_name TEXT NOT NULL,
        host_name TEXT NOT NULL,
        storage_name TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        reason TEXT NOT NULL DEFAULT '',
        error_message TEXT,
        completed_at TEXT,
        backup_record_id INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_vm_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_vm_result_id INTEGER NOT NULL REFERENCES job_vm_results(id),
        level TEXT NOT NULL,
        message TEXT NOT NULL,
        timestamp TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_backup_records_lookup
    ON backup_records(storage_name, snapshot_name, job_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_netapp_snapshots_job
    ON netapp_snapshots(job_id, snapshot_name)
    """,
)

_RETENTION_DELTAS = {
    "hours": lambda count: timedelta(hours=count),
    "days": lambda count: timedelta(days=count),
    "weeks": lambda count: timedelta(weeks=count),
}


class BackupMetadataStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            for statement in _SCHEMA:
                connection.execute(statement)
            connection.commit()

    # Jobs

    def create_job(self, *, job_type: str, related_vm: str, payload_json: str = "{}") -> Job:
        started_at = _utc_now_iso()
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                INSERT INTO jobs (type, status, related_vm, started_at, payload_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (job_type, JOB_STATUS_RUNNING, related_vm, started_at, payload_json),
            )
            connection.commit()
            job_id = int(cursor.lastrowid)

        return Job(
            id=job_id,
            type=job_type,
            status=JOB_STATUS_RUNNING,
            related_vm=related_vm,
            started_at=started_at,
            payload_json=payload_json,
        )

    def get_job(self, job_id: int) -> Job | None:
        with sqlite3.connect(self.db_path) as connection:
            connection.row_factory = sqlite3.Row
            row = connection.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()

        return _row_to(Job, row) if row else None

    def get_recent_jobs(self, limit: int = 50) -> list[Job]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            connection.row_factory = sqlite3.Row
            rows = connection.execute(
                "SELECT * FROM jobs ORDER BY started_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()

        return [_row_to(Job, row) for row in rows]

    def update_job_status(self, job_id: int, status: str) -> bool:
        if status in TERMINAL_JOB_STATUSES:
            raise ValueError(f"use complete_job, fail_job or cancel_job to set terminal status {status!r}")
        return self._update_open_job(job_id, "status = ?", (status,))

    def complete_job(self, job_id: int) -> bool:
        return self._update_open_job(
            job_id,
            "status = ?, completed_at = ?",
            (JOB_STATUS_COMPLETED, _utc_now_iso()),
        )

    def fail_job(self, job_id: int, error_message: str) -> bool:
        return self._update_open_job(
            job_id,
            "status = ?, error_message = ?, completed_at = ?",
            (JOB_STATUS_FAILED, error_message, _utc_now_iso()),
        )

    def cancel_job(self, job_id: int) -> bool:
        return self._update_open_job(
            job_id,
            "status = ?, error_message = ?, completed_at = ?",
            (JOB_STATUS_CANCELLED, CANCELLED_MESSAGE, _utc_now_iso()),
        )

    def _update_open_job(self, job_id: int, assignments: str, values: tuple[Any, ...]) -> bool:
        terminal = tuple(sorted(TERMINAL_JOB_STATUSES))
        placeholders = ", ".join("?" for _ in terminal)
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ? AND status NOT IN ({placeholders})",
                (*values, job_id, *terminal),
            )
            connection.commit()
            return cursor.rowcount > 0

    # Backup records

    def add_backup_record(self, record: BackupRecord) -> int:
        return self._insert("backup_records", record, exclude=("id",))

    def get_backup_records(self, job_id: int | None = None) -> list[BackupRecord]:
        query = "SELECT * FROM backup_records"
        parameters: tuple[Any, ...] = ()
        if job_id is not None:
            query += " WHERE job_id = ?"
            parameters = (job_id,)
        query += " ORDER BY id"

        with sqlite3.connect(self.db_path) as connection:
            connection.row_factory = sqlite3.Row
            rows = connection.execute(query, parameters).fetchall()

        return [_row_to(BackupRecord, row) for row in rows]

    def get_backup_record(self, record_id: int) -> BackupRecord | None:
        with sqlite3.connect(self.db_path) as connection:
            connection.row_factory = sqlite3.Row
            row = connection.execute("SELECT * FROM backup_records WHERE id = ?", (record_id,)).fetchone()

        return _row_to(BackupRecord, row) if row else None

    def mark_job_records_replicated(self, job_id: int) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                "UPDATE backup_records SET replicate_to_secondary = 1 WHERE job_id = ?",
                (job_id,),
            )
            connection.commit()
            return cursor.rowcount

    def find_expired_backup_records(self, now: datetime | None = None) -> list[BackupRecord]:
        reference = now or datetime.now(tz=UTC)
        expired: list[BackupRecord] = []
        for record in self.get_backup_records():
            delta_factory = _RETENTION_DELTAS.get(record.retention_unit.strip().lower())
            if delta_factory is None:
                continue
            taken_at = datetime.fromisoformat(record.timestamp)
            if taken_at.tzinfo is None:
                taken_at = taken_at.replace(tzinfo=UTC)
            if taken_at + delta_factory(record.retention_count) < reference:
                expired.append(record)
        return expired

    def find_backup_job_id(self, *, storage_name: str, snapshot_name: str) -> int | None:
        with sqlite3.connect(self.db_path) as connection:
            row = connection.execute(
                """
                SELECT job_id FROM backup_records
                WHERE storage_name = ? AND snapshot_name = ?
                ORDER BY id LIMIT 1
                """,
                (storage_name, snapshot_name),
            ).fetchone()

        return int(row[0]) if row else None

    def delete_job_rows(self, *, job_id: int, snapshot_name: str) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                "DELETE FROM netapp_snapshots WHERE job_id = ? AND snapshot_name = ?",
                (job_id, snapshot_name),
            )
            connection.execute(
                "DELETE FROM backup_records WHERE job_id = ? AND snapshot_name = ?",
                (job_id, snapshot_name),
            )
            connection.execute(
                "DELETE FROM job_vm_logs WHERE job_vm_result_id IN (SELECT id FROM job_vm_results WHERE job_id = ?)",
                (job_id,),
            )
            connection.execute("DELETE FROM job_vm_results WHERE job_id = ?", (job_id,))
            connection.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            connection.commit()

    # Per-VM job results

    def begin_vm_result(self, *, job_id: int, vmid: int, vm_name: str, host_name: str, storage_name: str) -> int:
        return self._insert(
            "job_vm_results",
            JobVmResult(
                job_id=job_id,
                vmid=vmid,
                vm_name=vm_name,
                host_name=host_name,
                storage_name=storage_name,
                status=VM_RESULT_PENDING,
                started_at=_utc_now_iso(),
            ),
            exclude=("id",),
        )

    def finish_vm_result(
        self,
        result_id: int,
        *,
        status: str,
        reason: str = "",
        error_message: str | None = None,
        backup_record_id: int | None = None,
    ) -> bool:
        """Set the final status of a pending VM row; rows already finished are left alone."""
        if status == VM_RESULT_PENDING:
            raise ValueError("a VM result cannot be finished as pending")

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                UPDATE job_vm_results
                SET status = ?, reason = ?, error_message = ?, backup_record_id = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (status, reason, error_message, backup_record_id, _utc_now_iso(), result_id, VM_RESULT_PENDING),
            )
            connection.commit()
            return cursor.rowcount > 0

    def fail_pending_vm_results(self, job_id: int, error_message: str) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                UPDATE job_vm_results
                SET status = ?, error_message = ?, completed_at = ?
                WHERE job_id = ? AND status = ?
                """,
                (VM_RESULT_FAILED, error_message, _utc_now_iso(), job_id, VM_RESULT_PENDING),
            )
            connection.commit()
            return cursor.rowcount

    def get_vm_results(self, job_id: int) -> list[JobVmResult]:
        with sqlite3.connect(self.db_path) as connection:
            connection.row_factory = sqlite3.Row
            rows = connection.execute(
                "SELECT * FROM job_vm_results WHERE job_id = ? ORDER BY id",
                (job_id,),
            ).fetchall()

        return [_row_to(JobVmResult, row) for row in rows]

    def log_vm(self, result_id: int, message: str, level: str = "Info") -> int:
        return self._insert(
            "job_vm_logs",
            JobVmLog(job_vm_result_id=result_id, level=level, message=message, timestamp=_utc_now_iso()),
            exclude=("id",),
        )

    def get_vm_logs(self, result_id: int) -> list[JobVmLog]:
        with sqlite3.connect(self.db_path) as connection:
            connection.row_factory = sqlite3.Row
            rows = connection.execute(
                "SELECT * FROM job_vm_logs WHERE job_vm_result_id = ? ORDER BY id",
                (result_id,),
            ).fetchall()

        return [_row_to(JobVmLog, row) for row in rows]

    # NetApp snapshots

    def add_netapp_snapshot(self, snapshot: NetappSnapshot) -> int:
        return self._insert("netapp_snapshots", snapshot, exclude=("id",))

    def get_netapp_snapshots(self, job_id: int | None = None) -> list[NetappSnapshot]:
        query = "SELECT * FROM netapp_snapshots"
        parameters: tuple[Any, ...] = ()
        if job_id is not None:
            query += " WHERE job_id = ?"
            parameters = (job_id,)
        query += " ORDER BY id"

        with sqlite3.connect(self.db_path) as connection:
            connection.row_factory = sqlite3.Row
            rows = connection.execute(query, parameters).fetchall()

        return [_row_to(NetappSnapshot, row) for row in rows]

    def update_netapp_snapshot(self, snapshot: NetappSnapshot) -> None:
        if snapshot.id is None:
            raise ValueError("snapshot must have an id to be updated")

        columns = [item.name for item in fields(NetappSnapshot) if item.name != "id"]
        assignments = ", ".join(f"{column} = ?" for column in columns)
        values = [getattr(snapshot, column) for column in columns]
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                f"UPDATE netapp_snapshots SET {assignments} WHERE id = ?",
                (*values, snapshot.id),
            )
            connection.commit()

    # SnapMirror relations

    def find_snapmirror_relation(
        self,
        source_volume: str,
        source_controller_id: int | None = None,
    ) -> SnapMirrorRelation | None:
        query = "SELECT * FROM snapmirror_relations WHERE lower(source_volume) = lower(?)"
        parameters: tuple[Any, ...] = (source_volume,)
        if source_controller_id is not None:
            query += " AND source_controller_id = ?"
            parameters = (source_volume, source_controller_id)
        query += " ORDER BY uuid LIMIT 1"

        with sqlite3.connect(self.db_path) as connection:
            connection.row_factory = sqlite3.Row
            row = connection.execute(query, parameters).fetchone()

        return _row_to(SnapMirrorRelation, row) if row else None

    def list_snapmirror_relations(self) -> list[SnapMirrorRelation]:
        with sqlite3.connect(self.db_path) as connection:
            connection.row_factory = sqlite3.Row
            rows = connection.execute("SELECT * FROM snapmirror_relations ORDER BY uuid").fetchall()

        return [_row_to(SnapMirrorRelation, row) for row in rows]

    def replace_snapmirror_relations(
        self,
        *,
        destination_controller_id: int,
        relations: Iterable[SnapMirrorRelation],
    ) -> int:
        rows = [astuple(relation) for relation in relations]
        columns = [item.name for item in fields(SnapMirrorRelation)]
        placeholders = ", ".join("?" for _ in columns)
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                "DELETE FROM snapmirror_relations WHERE destination_controller_id = ?",
                (destination_controller_id,),
            )
            connection.executemany(
                f"INSERT OR REPLACE INTO snapmirror_relations ({', '.join(columns)}) VALUES ({placeholders})",
                rows,
            )
            connection.commit()
        return len(rows)

    def delete_relations_for_unknown_controllers(self, known_controller_ids: Iterable[int]) -> int:
        known = tuple(sorted(set(known_controller_ids)))
        if not known:
            query = "DELETE FROM snapmirror_relations"
            parameters: tuple[Any, ...] = ()
        else:
            placeholders = ", ".join("?" for _ in known)
            query = (
                "DELETE FROM snapmirror_relations "
                f"WHERE source_controller_id NOT IN ({placeholders}) "
                f"OR destination_controller_id NOT IN ({placeholders})"
            )
            parameters = (*known, *known)

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(query, parameters)
            connection.commit()
            return cursor.rowcount

    def _insert(self, table: str, item: Any, *, exclude: tuple[str, ...]) -> int:
        columns = [entry.name for entry in fields(item) if entry.name not in exclude]
        placeholders = ", ".join("?" for _ in columns)
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                tuple(getattr(item, column) for column in columns),
            )
            connection.commit()
            return int(cursor.lastrowid)


def _row_to(model: Any, row: sqlite3.Row) -> Any:
    values: dict[str, Any] = {}
    for entry in fields(model):
        value = row[entry.name]
        if entry.type in {"bool", bool}:
            value = bool(value)
        values[entry.name] = value
    return model(**values)


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()
