"""Core data types shared by the reconcilers.

The reconcilers talk to two collaborators through duck typing:

* a Kubernetes client with ``get(kind, name)``, ``list(kind, namespace, labels)``,
  ``create(obj)``, ``update(obj)`` and ``delete(obj)``.  ``get`` raises
  :class:`NotFoundError` when the object does not exist.
* a pod runner with ``exec_in_pod(pod, container, *cmd)``,
  ``exec_admintools(pod, container, *cmd)`` and ``exec_vsql(pod, container, *cmd)``.
  Each returns ``(stdout, stderr)`` and raises :class:`ExecError` on failure.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field

# Key in the superuser password secret that holds the password.
SUPERUSER_PASSWORD_KEY = "password"

SERVER_CONTAINER = "server"
SUBCLUSTER_LABEL = "vertica.com/subcluster"
DATABASE_LABEL = "vertica.com/database"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
OPERATOR_NAME = "verticadb-operator"

ADMINTOOLS_CONF = "/opt/vertica/config/admintools.conf"
INSTALLER_INDICATOR_FILE = "/opt/vertica/config/install-indicator"
EULA_ACCEPTANCE_FILE = "/opt/vertica/config/d5415f948449e9d4c421b568f2411140.dat"
CONFIG_LOGROTATE_PATH = "/opt/vertica/config/logrotate"
CONFIG_SHARE_PATH = "/opt/vertica/config/share"
LOCAL_DATA_PATH = "/home/dbadmin/local-data"
AUTH_PARMS_FILE = "/home/dbadmin/auth_parms.conf"

KIND_STATEFULSET = "StatefulSet"
KIND_SERVICE = "Service"
KIND_POD = "Pod"
POD_RUNNING = "Running"


@dataclass(frozen=True, order=True)
class NamespacedName:
    """Name of a Kubernetes object within a namespace."""

    name: str = ""
    namespace: str = ""

    def __bool__(self) -> bool:
        return bool(self.name or self.namespace)


class TriState(enum.Enum):
    """A boolean that may also be unknown."""

    TRUE = "true"
    FALSE = "false"
    NONE = "none"

    def is_true(self) -> bool:
        return self is TriState.TRUE

    def is_false(self) -> bool:
        return self is TriState.FALSE

    def is_none(self) -> bool:
        return self is TriState.NONE


class InitPolicy(str, enum.Enum):
    """How the database is initialized."""

    CREATE = "Create"
    REVIVE = "Revive"
    SCHEDULE_ONLY = "ScheduleOnly"


@dataclass
class Subcluster:
    name: str
    size: int = 0


@dataclass
class SubclusterPodCount:
    subcluster_index: int
    pod_count: int = 0


@dataclass
class PodStatus:
    installed: bool = False
    added_to_db: bool = False
    vnode_name: str = ""
    up_node: bool = False


@dataclass
class SubclusterStatus:
    name: str = ""
    install_count: int = 0
    added_to_db_count: int = 0
    up_node_count: int = 0
    detail: list[PodStatus] = field(default_factory=list)


@dataclass
class Condition:
    type: str
    status: bool


@dataclass
class VerticaDBStatus:
    subcluster_count: int = 0
    install_count: int = 0
    added_to_db_count: int = 0
    up_node_count: int = 0
    subclusters: list[SubclusterStatus] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class VerticaDB:
    """The custom resource the reconcilers act on."""

    name: str = "vertica-sample"
    namespace: str = "default"
    db_name: str = "vertdb"
    uid: str = field(default_factory=lambda: str(uuid.uuid4()))
    init_policy: InitPolicy = InitPolicy.CREATE
    subclusters: list[Subcluster] = field(default_factory=list)
    revive_order: list[SubclusterPodCount] = field(default_factory=list)
    communal_location: str = ""
    communal_endpoint: str = ""
    data_path: str = "/data"
    depot_path_root: str = "/depot"
    auto_restart_vertica: bool = True
    ignore_cluster_lease: bool = False
    restart_timeout: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    status: VerticaDBStatus = field(default_factory=VerticaDBStatus)

    def subcluster_map(self) -> dict[str, Subcluster]:
        """Map each subcluster name to its subcluster."""
        return {sc.name: sc for sc in self.subclusters}

    def sts_name(self, sc: Subcluster) -> NamespacedName:
        return NamespacedName(f"{self.name}-{sc.name}", self.namespace)

    def pod_name(self, sc: Subcluster, index: int) -> NamespacedName:
        return NamespacedName(f"{self.sts_name(sc).name}-{index}", self.namespace)

    def ext_svc_name(self, sc: Subcluster) -> NamespacedName:
        return NamespacedName(f"{self.name}-{sc.name}", self.namespace)

    def db_data_path(self) -> str:
        return f"{self.data_path}/{self.db_name}"

    def depot_path(self) -> str:
        return f"{self.depot_path_root}/{self.db_name}"

    def communal_path(self) -> str:
        return self.communal_location

    def pv_sub_path(self, subdir: str) -> str:
        return f"{self.uid}/{subdir}"

    def installer_indicator_file(self) -> str:
        return f"{INSTALLER_INDICATOR_FILE}{self.uid}"

    def operator_labels(self) -> dict[str, str]:
        """Labels the operator sets on every object it creates."""
        return {MANAGED_BY_LABEL: OPERATOR_NAME, DATABASE_LABEL: self.db_name}


@dataclass
class KubeObject:
    """A Kubernetes object as seen by the reconcilers."""

    kind: str
    name: NamespacedName
    labels: dict[str, str] = field(default_factory=dict)
    spec: dict = field(default_factory=dict)
    status: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Result:
    """Outcome of one reconcile step."""

    requeue: bool = False
    requeue_after: float = 0.0


class NotFoundError(LookupError):
    """Raised by a client when an object does not exist."""

    def __init__(self, name: object = "") -> None:
        super().__init__(f"not found: {name}")
        self.name = name


class ExecError(RuntimeError):
    """Raised by a pod runner when a command fails."""

    def __init__(self, message: str = "command failed", stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr