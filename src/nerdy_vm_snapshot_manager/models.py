from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

JOB_TYPE_BACKUP = "Backup"
JOB_TYPE_RESTORE = "Restore"

JOB_STATUS_RUNNING = "Running"
JOB_STATUS_PAUSED_VMS = "Paused VMs"
JOB_STATUS_CREATING_SNAPSHOTS = "Creating snapshots"
JOB_STATUS_WAITING_SNAPSHOTS = "Waiting for snapshots"
JOB_STATUS_SNAPSHOTS_COMPLETED = "snapshots completed"
JOB_STATUS_SNAPSHOT_CREATED = "Snapshot created"
JOB_STATUS_TRIGGERING_REPLICATION = "Triggering replication update"
JOB_STATUS_WAITING_REPLICATION = "Waiting for replication"
JOB_STATUS_REPLICATION_COMPLETED = "Replication completed"
JOB_STATUS_CLONED_VOLUME = "Cloned volume"
JOB_STATUS_EXPORT_POLICY_APPLIED = "Export policy applied"
JOB_STATUS_EXPORT_PATH_SET = "Export path set"
JOB_STATUS_MOUNTED = "Mounted on target host"
JOB_STATUS_COMPLETED = "Completed"
JOB_STATUS_FAILED = "Failed"
JOB_STATUS_CANCELLED = "Cancelled"

TERMINAL_JOB_STATUSES = frozenset({JOB_STATUS_COMPLETED, JOB_STATUS_FAILED, JOB_STATUS_CANCELLED})

RETENTION_UNITS = ("Hours", "Days", "Weeks")

VM_RESULT_PENDING = "Pending"
VM_RESULT_SUCCESS = "Success"
VM_RESULT_WARNING = "Warning"
VM_RESULT_SKIPPED = "Skipped"
VM_RESULT_FAILED = "Failed"

RESTORE_CREATE_NEW = "CreateNew"
RESTORE_REPLACE_ORIGINAL = "ReplaceOriginal"
RESTORE_TYPES = (RESTORE_CREATE_NEW, RESTORE_REPLACE_ORIGINAL)


class StorageErrorKind(str, Enum):
    VOLUME_NOT_FOUND = "volume_not_found"
    SNAPSHOT_NOT_FOUND = "snapshot_not_found"
    INVALID_REQUEST = "invalid_request"
    REMOTE_ERROR = "remote_error"


@dataclass(frozen=True)
class ProxmoxHost:
    hostname: str
    address: str


@dataclass(frozen=True)
class ProxmoxCluster:
    id: int
    name: str
    username: str
    password: str
    hosts: tuple[ProxmoxHost, ...]

    @property
    def ssh_username(self) -> str:
        return self.username.split("@", 1)[0]


@dataclass(frozen=True)
class NetappController:
    id: int
    name: str
    address: str
    username: str
    password: str
    is_primary: bool = True
    selected_volumes: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProxmoxVM:
    vmid: int
    name: str
    host_name: str
    host_address: str


@dataclass(frozen=True)
class VmStatus:
    status: str
    qmp_status: str

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @property
    def is_paused(self) -> bool:
        return self.qmp_status == "paused"


@dataclass(frozen=True)
class ClusterStatus:
    has_quorum: bool
    online_hosts: tuple[str, ...]
    offline_hosts: tuple[str, ...]
    summary: str


@dataclass(frozen=True)
class Job:
    id: int
    type: str
    status: str
    related_vm: str
    started_at: str
    completed_at: str | None = None
    error_message: str | None = None
    payload_json: str = "{}"


@dataclass(frozen=True)
class BackupRecord:
    job_id: int
    vmid: int
    vm_name: str
    host_name: str
    storage_name: str
    snapshot_name: str
    controller_id: int
    label: str
    retention_count: int
    retention_unit: str
    timestamp: str
    configuration_json: str = "{}"
    schedule_id: int | None = None
    is_application_aware: bool = False
    enable_io_freeze: bool = False
    use_proxmox_snapshot: bool = False
    with_memory: bool = False
    replicate_to_secondary: bool = False
    id: int | None = None


@dataclass(frozen=True)
class NetappSnapshot:
    job_id: int
    snapshot_name: str
    primary_volume: str
    primary_controller_id: int
    created_at: str
    snapmirror_label: str = ""
    secondary_volume: str | None = None
    secondary_controller_id: int | None = None
    exists_on_primary: bool = True
    exists_on_secondary: bool = False
    is_replicated: bool = False
    last_checked: str | None = None
    id: int | None = None


@dataclass(frozen=True)
class SnapMirrorRelation:
    uuid: str
    source_volume: str
    source_controller_id: int
    destination_volume: str
    destination_controller_id: int
    source_svm: str = ""
    destination_svm: str = ""
    relationship_type: str = ""
    policy_name: str = ""
    policy_type: str = ""
    state: str = ""
    healthy: bool = False
    lag_time: str = ""
    last_transfer_state: str = ""
    last_transfer_end_time: str = ""


@dataclass(frozen=True)
class SnapshotResult:
    success: bool
    snapshot_name: str = ""
    error_message: str = ""
    error_kind: StorageErrorKind | None = None


@dataclass(frozen=True)
class DeleteSnapshotResult:
    success: bool
    error_message: str = ""
    error_kind: StorageErrorKind | None = None


@dataclass(frozen=True)
class FlexCloneResult:
    success: bool
    clone_volume_name: str = ""
    job_uuid: str | None = None
    error_message: str = ""
    error_kind: StorageErrorKind | None = None


@dataclass(frozen=True)
class VolumeMountInfo:
    volume_name: str
    svm_name: str
    mount_ips: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class JobVmResult:
    """Outcome of one VM inside a backup or restore job."""

    job_id: int
    vmid: int
    vm_name: str
    host_name: str
    storage_name: str
    status: str
    started_at: str
    reason: str = ""
    error_message: str | None = None
    completed_at: str | None = None
    backup_record_id: int | None = None
    id: int | None = None


@dataclass(frozen=True)
class JobVmLog:
    job_vm_result_id: int
    level: str
    message: str
    timestamp: str
    id: int | None = None
