"""Facts gathered about the pods that make up a Vertica cluster."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from .model import (
    ADMINTOOLS_CONF,
    CONFIG_LOGROTATE_PATH,
    CONFIG_SHARE_PATH,
    EULA_ACCEPTANCE_FILE,
    KIND_POD,
    KIND_STATEFULSET,
    POD_RUNNING,
    SERVER_CONTAINER,
    ExecError,
    InitPolicy,
    NamespacedName,
    NotFoundError,
    Subcluster,
    TriState,
    VerticaDB,
)
from .scfinder import FindFlags, SubclusterFinder

_NO_SUCH_FILE = "No such file or directory"
_VSQL_CONNECT_FAILURE = "vsql: could not connect to server:"
_VNODE_RE = re.compile(r"(v_.+_node\d+)_data")


@dataclass
class PodFact:
    """What is known about a single pod."""

    name: NamespacedName = field(default_factory=NamespacedName)
    dns_name: str = ""
    pod_ip: str = ""
    subcluster: str = ""
    # The pod exists in the API server.
    exists: bool = False
    # The pod is bound to a node and its containers are created.
    is_pod_running: bool = False
    # Whether install has run; NONE when it could not be determined.
    is_installed: TriState = TriState.NONE
    # admintools.conf exists but belongs to an old vdb.
    has_stale_admintools_conf: bool = False
    # The database was created and this pod was added to it.
    db_exists: TriState = TriState.NONE
    # A vertica process accepts connections in the pod.
    up_node: bool = False
    vnode_name: str = ""
    compat21_node_name: str = ""
    eula_accepted: TriState = TriState.NONE
    config_logrotate_exists: bool = False
    config_logrotate_writable: bool = False
    config_share_exists: bool = False


class PodFacts:
    """A cache of facts for all pods of a vdb."""

    def __init__(self, client, runner) -> None:
        self.client = client
        self.runner = runner
        self.detail: dict[NamespacedName, PodFact] = {}
        self.need_collection = True

    def collect(self, vdb: VerticaDB) -> None:
        """Gather facts for every pod, unless the cache is up to date."""
        if not self.need_collection:
            return
        self.detail = {}

        # Include subclusters scheduled for deletion; their statefulsets may
        # still be around.
        finder = SubclusterFinder(self.client, vdb)
        try:
            subclusters = finder.find_subclusters(FindFlags.ALL)
        except Exception:
            # A failed lookup leaves the facts marked as needing collection.
            return

        for sc in subclusters:
            self._collect_subcluster(vdb, sc)
        self.need_collection = False

    def invalidate(self) -> None:
        """Mark the facts stale so the next collect gathers them again."""
        self.need_collection = True

    def _collect_subcluster(self, vdb: VerticaDB, sc: Subcluster) -> None:
        try:
            sts = self.client.get(KIND_STATEFULSET, vdb.sts_name(sc))
        except NotFoundError:
            # No statefulset means none of its pods exist.
            return
        except Exception as err:
            raise RuntimeError(
                f"could not fetch statefulset for pod fact collection {sc.name} {err}"
            ) from err
        max_size = max(sc.size, int(sts.spec.get("replicas", 0)))
        for index in range(max_size):
            self.collect_pod_by_sts_index(vdb, sc, index)

    def collect_pod_by_sts_index(self, vdb: VerticaDB, sc: Subcluster, pod_index: int) -> None:
        """Collect the facts for one pod of a subcluster."""
        pf = PodFact(name=vdb.pod_name(sc, pod_index), subcluster=sc.name)
        try:
            pod = self.client.get(KIND_POD, pf.name)
        except NotFoundError:
            # A missing pod is treated as not running.
            self.detail[pf.name] = pf
            return
        pf.exists = True
        pf.is_pod_running = pod.status.get("phase") == POD_RUNNING
        pf.dns_name = f"{pod.spec.get('hostname', '')}.{pod.spec.get('subdomain', '')}"
        pf.pod_ip = pod.status.get("podIP", "")

        checks: tuple[Callable[[VerticaDB, PodFact], None], ...] = (
            self._check_is_installed,
            self._check_is_db_created,
            self.check_if_node_is_up,
            self._check_eula_acceptance,
            self._check_logrotate_exists,
            self._check_is_logrotate_writable,
            self._check_that_config_share_exists,
        )
        for check in checks:
            check(vdb, pf)
        self.detail[pf.name] = pf

    def _exec(self, pf: PodFact, *cmd: str) -> tuple[str, str]:
        return self.runner.exec_in_pod(pf.name, SERVER_CONTAINER, *cmd)

    def _succeeds(self, pf: PodFact, *cmd: str) -> bool:
        try:
            self._exec(pf, *cmd)
        except ExecError:
            return False
        return True

    def _check_is_installed(self, vdb: VerticaDB, pf: PodFact) -> None:
        if not pf.is_pod_running:
            pf.is_installed = TriState.NONE
            return

        if vdb.init_policy == InitPolicy.SCHEDULE_ONLY:
            # The operator did not run the install, so admintools.conf is the
            # only indicator, and the compat21 name cannot be known.
            installed = self._succeeds(pf, "test", "-f", ADMINTOOLS_CONF)
            pf.is_installed = TriState.TRUE if installed else TriState.FALSE
            pf.compat21_node_name = ""
            return

        indicator = vdb.installer_indicator_file()
        try:
            stdout, _ = self._exec(pf, "cat", indicator)
        except ExecError as err:
            if f"cat: {indicator}: {_NO_SUCH_FILE}" not in err.stderr:
                raise
            pf.is_installed = TriState.FALSE
            try:
                self._exec(pf, "ls", ADMINTOOLS_CONF)
            except ExecError as ls_err:
                if _NO_SUCH_FILE not in ls_err.stderr:
                    raise
                pf.has_stale_admintools_conf = False
            else:
                pf.has_stale_admintools_conf = True
        else:
            pf.is_installed = TriState.TRUE
            pf.compat21_node_name = stdout.removesuffix("\n")

    def _check_eula_acceptance(self, vdb: VerticaDB, pf: PodFact) -> None:
        if not pf.is_pod_running:
            return
        try:
            self._exec(pf, "cat", EULA_ACCEPTANCE_FILE)
        except ExecError as err:
            if f"cat: {EULA_ACCEPTANCE_FILE}: {_NO_SUCH_FILE}" not in err.stderr:
                raise
            pf.eula_accepted = TriState.FALSE
        else:
            pf.eula_accepted = TriState.TRUE

    def _check_logrotate_exists(self, vdb: VerticaDB, pf: PodFact) -> None:
        if pf.is_pod_running and self._succeeds(pf, "test", "-d", CONFIG_LOGROTATE_PATH):
            pf.config_logrotate_exists = True

    def _check_is_logrotate_writable(self, vdb: VerticaDB, pf: PodFact) -> None:
        if pf.is_pod_running and self._succeeds(pf, "test", "-w", CONFIG_LOGROTATE_PATH):
            pf.config_logrotate_writable = True

    def _check_that_config_share_exists(self, vdb: VerticaDB, pf: PodFact) -> None:
        if pf.is_pod_running and self._succeeds(pf, "test", "-d", CONFIG_SHARE_PATH):
            pf.config_share_exists = True

    def _check_is_db_created(self, vdb: VerticaDB, pf: PodFact) -> None:
        if not pf.is_pod_running:
            pf.db_exists = TriState.NONE
            return
        cmd = ("bash", "-c", f"ls -d {vdb.db_data_path()}/v_{vdb.db_name}_node????_data")
        try:
            stdout, _ = self._exec(pf, *cmd)
        except ExecError as err:
            if _NO_SUCH_FILE not in err.stderr:
                raise
            pf.db_exists = TriState.FALSE
        else:
            pf.db_exists = TriState.TRUE
            pf.vnode_name = parse_vertica_node_name(stdout)

    def check_if_node_is_up(self, vdb: VerticaDB, pf: PodFact) -> None:
        """Set whether a vertica process in the pod accepts connections."""
        if pf.db_exists.is_false() or not pf.is_pod_running:
            pf.up_node = False
            return
        try:
            self.runner.exec_vsql(pf.name, SERVER_CONTAINER, "-c", "select 1")
        except ExecError as err:
            if _VSQL_CONNECT_FAILURE not in err.stderr:
                raise
            pf.up_node = False
        else:
            pf.up_node = True

    def does_db_exist(self) -> TriState:
        """TRUE if a running pod has the db, FALSE only if certain it is nowhere."""
        result = TriState.FALSE
        for pf in self.detail.values():
            if pf.db_exists.is_true() and pf.is_pod_running:
                return TriState.TRUE
            if pf.db_exists.is_none() or not pf.is_pod_running:
                result = TriState.NONE
        return result

    def any_pods_missing_db(self, sc_name: str) -> TriState:
        """TRUE if a running pod of the subcluster lacks the db; NONE if unsure."""
        result = TriState.FALSE
        for pf in self.detail.values():
            if pf.subcluster != sc_name:
                continue
            if pf.db_exists.is_false() and pf.is_pod_running:
                return TriState.TRUE
            if pf.db_exists.is_none():
                result = TriState.NONE
        return result

    def find_pods_with_missing_db(self, sc_name: str) -> list[PodFact]:
        """Running pods of the subcluster without the db, ordered by DNS name."""
        pods = self.filter_pods(
            lambda pf: pf.subcluster == sc_name and pf.db_exists.is_false() and pf.is_pod_running
        )
        return sorted(pods, key=lambda pf: pf.dns_name)

    def find_pod_to_run_vsql(self) -> PodFact | None:
        return next((pf for pf in self.detail.values() if pf.up_node), None)

    def find_pod_to_run_admintools(self) -> PodFact | None:
        """Prefer an up pod; otherwise a running pod with vertica installed."""
        up = self.find_pod_to_run_vsql()
        if up is not None:
            return up
        return next(
            (pf for pf in self.detail.values() if pf.is_installed.is_true() and pf.is_pod_running),
            None,
        )

    def find_running_pod(self) -> PodFact | None:
        return next((pf for pf in self.detail.values() if pf.is_pod_running), None)

    def find_restartable_pods(self) -> list[PodFact]:
        return self.filter_pods(
            lambda pf: not pf.up_node and pf.db_exists.is_true() and pf.is_pod_running
        )

    def find_installed_pods(self) -> list[PodFact]:
        return self.filter_pods(lambda pf: pf.is_installed.is_true() and pf.is_pod_running)

    def find_reip_pods(self, only_pods_without_dbs: bool) -> list[PodFact]:
        """Pods that may need their IP refreshed with re_ip."""

        def wanted(pf: PodFact) -> bool:
            if not pf.exists or pf.is_installed.is_false():
                return False
            return not (only_pods_without_dbs and pf.db_exists.is_true())

        return self.filter_pods(wanted)

    def filter_pods(self, predicate: Callable[[PodFact], bool]) -> list[PodFact]:
        return [pf for pf in self.detail.values() if predicate(pf)]

    def are_all_pods_running_and_zero_installed(self) -> bool:
        return not any(
            (pf.exists and not pf.is_pod_running) or pf.is_installed.is_true()
            for pf in self.detail.values()
        )

    def count_running_and_installed(self) -> int:
        return sum(
            1 for pf in self.detail.values() if pf.is_pod_running and pf.is_installed.is_true()
        )

    def get_up_node_count(self) -> int:
        return sum(1 for pf in self.detail.values() if pf.up_node)

    def any_pods_not_running(self) -> NamespacedName | None:
        """Name of the first existing pod that isn't running, or None."""
        return next(
            (pf.name for pf in self.detail.values() if pf.exists and not pf.is_pod_running),
            None,
        )


def parse_vertica_node_name(stdout: str) -> str:
    """Extract the vertica node name from a data directory listing."""
    match = _VNODE_RE.search(stdout)
    return match.group(1) if match else ""


def gen_pod_names(pods: Iterable[PodFact]) -> str:
    return ", ".join(pf.name.name for pf in pods)