"""Reviving a database from communal storage."""

from __future__ import annotations

import logging
import re
import time

from .model import (
    AUTH_PARMS_FILE,
    SERVER_CONTAINER,
    ExecError,
    NamespacedName,
    Result,
    VerticaDB,
)
from .podfacts import PodFact, PodFacts

log = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

REVIVE_DB_START = "ReviveDBStart"
REVIVE_DB_SUCCEEDED = "ReviveDBSucceeded"
REVIVE_DB_FAILED = "ReviveDBFailed"
REVIVE_DB_CLUSTER_IN_USE = "ReviveDBClusterInUse"
REVIVE_DB_NOT_FOUND = "ReviveDBNotFound"
REVIVE_DB_PERMISSION_DENIED = "ReviveDBPermissionDenied"
REVIVE_DB_NODE_COUNT_MISMATCH = "ReviveDBNodeCountMismatch"
REVIVE_ORDER_BAD = "ReviveOrderBad"
S3_BUCKET_DOES_NOT_EXIST = "S3BucketDoesNotExist"
S3_ENDPOINT_ISSUE = "S3EndpointIssue"

_CLUSTER_LEASE_RE = re.compile(
    r"the communal storage location.*might still be in use.*cluster lease will expire", re.DOTALL
)
_DB_NOT_FOUND_RE = re.compile(r"Could not copy file.+: No such file or directory")


def is_cluster_lease_not_expired(op: str) -> bool:
    return _CLUSTER_LEASE_RE.search(op) is not None


def is_database_not_found(op: str) -> bool:
    return _DB_NOT_FOUND_RE.search(op) is not None


def is_permission_denied_error(op: str) -> bool:
    return "Permission Denied" in op


def is_node_count_mismatch(op: str) -> bool:
    return "Error: Node count mismatch" in op or "Error: Primary node count mismatch" in op


def _is_bucket_not_exist_error(op: str) -> bool:
    return "The specified bucket does not exist" in op


def _is_endpoint_bad_error(op: str) -> bool:
    return "Unable to connect to endpoint" in op


class ReviveDBReconciler:
    """Revives a database when the vdb asks for one to be revived.

    ``recorder`` receives events through ``event(obj, event_type, reason, message)``.
    """

    def __init__(self, recorder, vdb: VerticaDB, runner, pfacts: PodFacts) -> None:
        self.recorder = recorder
        self.vdb = vdb
        self.runner = runner
        self.pfacts = pfacts

    def _event(self, event_type: str, reason: str, message: str) -> None:
        self.recorder.event(self.vdb, event_type, reason, message)

    def exec_cmd(self, at_pod: NamespacedName, cmd: list[str]) -> Result:
        """Run admintools -t revive_db, requeueing on known, recoverable failures."""
        self._event(EVENT_NORMAL, REVIVE_DB_START, "Calling 'admintools -t revive_db'")
        start = time.monotonic()
        try:
            self.runner.exec_admintools(at_pod, SERVER_CONTAINER, *cmd)
        except ExecError as err:
            return self._handle_failure(err)
        elapsed = time.monotonic() - start
        self._event(
            EVENT_NORMAL,
            REVIVE_DB_SUCCEEDED,
            f"Successfully revived database. It took {elapsed:.3f}s",
        )
        return Result()

    def _handle_failure(self, err: ExecError) -> Result:
        stdout = err.stdout
        communal = self.vdb.communal_path()
        if is_cluster_lease_not_expired(stdout):
            self._event(
                EVENT_WARNING,
                REVIVE_DB_CLUSTER_IN_USE,
                f"revive_db failed because the cluster lease has not expired for '{communal}'",
            )
        elif _is_bucket_not_exist_error(stdout):
            self._event(
                EVENT_WARNING,
                S3_BUCKET_DOES_NOT_EXIST,
                f"The bucket in the S3 path '{communal}' does not exist",
            )
        elif _is_endpoint_bad_error(stdout):
            self._event(
                EVENT_WARNING,
                S3_ENDPOINT_ISSUE,
                f"Unable to connect to S3 endpoint '{self.vdb.communal_endpoint}'",
            )
        elif is_database_not_found(stdout):
            self._event(
                EVENT_WARNING,
                REVIVE_DB_NOT_FOUND,
                f"revive_db failed because the database '{self.vdb.db_name}' could not be "
                f"found in the communal path '{communal}'",
            )
        elif is_permission_denied_error(stdout):
            self._event(
                EVENT_WARNING,
                REVIVE_DB_PERMISSION_DENIED,
                "revive_db failed because of a permission denied error.  Verify these paths "
                f"match the ones used by the database: {self.vdb.data_path}, "
                f"{self.vdb.depot_path_root}",
            )
        elif is_node_count_mismatch(stdout):
            self._event(
                EVENT_WARNING,
                REVIVE_DB_NODE_COUNT_MISMATCH,
                "revive_db failed because of a node count mismatch",
            )
        else:
            self._event(EVENT_WARNING, REVIVE_DB_FAILED, "Failed to revive the database")
            raise err
        return Result(requeue=True)

    def get_pod_list(self) -> list[PodFact] | None:
        """Pods to revive with, ordered by the revive order.

        Returns None, after recording an event, when the revive order is bad.
        """
        subclusters = self.vdb.subclusters
        pods_left = [sc.size for sc in subclusters]
        pod_list: list[PodFact] = []

        def bad_order(reason: str) -> None:
            log.info("bad reviveOrder: %s", reason)
            self._event(
                EVENT_WARNING,
                REVIVE_ORDER_BAD,
                f"revive_db failed because the reviveOrder specified is bad: {reason}",
            )

        def add_pods(sc_index: int, count: int) -> bool:
            sc = subclusters[sc_index]
            for _ in range(count):
                name = self.vdb.pod_name(sc, sc.size - pods_left[sc_index])
                pf = self.pfacts.detail.get(name)
                if pf is None:
                    bad_order(f"pod '{name.name}' not found")
                    return False
                pod_list.append(pf)
                pods_left[sc_index] -= 1
            return True

        for entry in self.vdb.revive_order:
            index = entry.subcluster_index
            if not 0 <= index < len(subclusters):
                bad_order(f"subcluster index '{index}' out of bounds")
                return None
            count = entry.pod_count
            if pods_left[index] < count or count <= 0:
                count = pods_left[index]
            if not add_pods(index, count):
                return None

        # Pick up whatever the revive order left out, e.g. when it is empty.
        for index in range(len(subclusters)):
            if not add_pods(index, pods_left[index]):
                return None
        return pod_list

    def gen_cmd(self, host_list: list[str]) -> list[str]:
        """The admintools arguments that revive the database."""
        cmd = [
            "-t",
            "revive_db",
            "--hosts=" + ",".join(host_list),
            "--communal-storage-location=" + self.vdb.communal_path(),
            "--communal-storage-params=" + AUTH_PARMS_FILE,
            "--database",
            self.vdb.db_name,
        ]
        if self.vdb.ignore_cluster_lease:
            cmd.append("--ignore-cluster-lease")
        return cmd