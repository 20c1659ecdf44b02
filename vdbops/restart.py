"""Restarting vertica processes in pods that are down."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Iterable

from .commands import debug_dump_admintools_conf
from .model import (
    ADMINTOOLS_CONF,
    SERVER_CONTAINER,
    Condition,
    ExecError,
    InitPolicy,
    NamespacedName,
    Result,
    VerticaDB,
)
from .podfacts import PodFact, PodFacts
from .revive import EVENT_NORMAL, EVENT_WARNING

log = logging.getLogger(__name__)

# Seconds to wait after a failed restart before trying again.
REQUEUE_WAIT_TIME_IN_SECONDS = 10
# The IP map file used by re_ip.
ADMINTOOLS_MAP_FILE = "/opt/vertica/config/ipMap.txt"
# The STATE column value of an up node.
STATE_UP = "UP"

AUTO_RESTART_VERTICA = "AutoRestartVertica"

NODE_RESTART_STARTED = "NodeRestartStarted"
NODE_RESTART_FAILED = "NodeRestartFailed"
NODE_RESTART_SUCCEEDED = "NodeRestartSucceeded"
REIP_FAILED = "ReipFailed"
CLUSTER_RESTART_STARTED = "ClusterRestartStarted"
CLUSTER_RESTART_FAILED = "ClusterRestartFailed"
CLUSTER_RESTART_SUCCEEDED = "ClusterRestartSucceeded"

_NOT_ALL_DOWN = "All nodes in the input are not down, can't restart"
_NODE_LINE_RE = re.compile(r"^(node\d{4}) = ([\d.:a-fA-F]+),", re.ASCII)
_COL_HEADER_COUNT = 2
_LIST_NODES_COL_COUNT = 4


def parse_cluster_node_status(stdout: str) -> dict[str, str]:
    """Map vnode names to their state from ``admintools -t list_allnodes`` output."""
    lines = stdout.split("\n")
    states: dict[str, str] = {}
    # The first two lines are the column header and its underline.
    for line in lines[_COL_HEADER_COUNT:]:
        cols = line.split("|")
        if len(cols) < _LIST_NODES_COL_COUNT:
            continue
        states[cols[0].strip(" ")] = cols[2].strip(" ")
    return states


def parse_nodes_from_admintool_conf(node_text: str) -> dict[str, str]:
    """Map compat21 node names to IPs from grepped admintools.conf lines."""
    ips: dict[str, str] = {}
    for line in node_text.split("\n"):
        match = _NODE_LINE_RE.match(line)
        if match:
            ips[match.group(1)] = match.group(2)
    return ips


def gen_map_file_upload_cmd(map_file_contents: Iterable[str]) -> list[str]:
    """The command that writes the re_ip map file into the pod."""
    contents = "\n".join(map_file_contents)
    return ["bash", "-c", f"cat > {ADMINTOOLS_MAP_FILE}<<< '{contents}'"]


def gen_reip_command() -> list[str]:
    return ["-t", "re_ip", f"--file={ADMINTOOLS_MAP_FILE}", "--noprompt"]


def gen_restart_vnode_list(pods: Iterable[PodFact]) -> list[str]:
    return [pf.vnode_name for pf in pods]


def gen_restart_ip_list(pods: Iterable[PodFact]) -> list[str]:
    return [pf.pod_ip for pf in pods]


class RestartReconciler:
    """Ensures each pod has a running vertica process.

    ``recorder`` receives events through ``event(obj, event_type, reason, message)``.
    """

    def __init__(self, client, recorder, vdb: VerticaDB, runner, pfacts: PodFacts) -> None:
        self.client = client
        self.recorder = recorder
        self.vdb = vdb
        self.runner = runner
        self.pfacts = pfacts
        # The pod admintools is run from.
        self.at_pod = NamespacedName()

    def _event(self, event_type: str, reason: str, message: str) -> None:
        self.recorder.event(self.vdb, event_type, reason, message)

    def _update_condition(self, status: bool) -> None:
        conditions = self.vdb.status.conditions
        conditions[:] = [c for c in conditions if c.type != AUTO_RESTART_VERTICA]
        conditions.append(Condition(AUTO_RESTART_VERTICA, status))
        self.client.update(self.vdb)

    def reconcile(self) -> Result:
        """Bring every pod up in the vertica sense."""
        if not self.vdb.auto_restart_vertica:
            self._update_condition(False)
            return Result()
        self._update_condition(True)

        self.pfacts.collect(self.vdb)

        # Cluster-wide operations only apply when k8s manages the whole cluster.
        if (
            self.pfacts.get_up_node_count() == 0
            and self.vdb.init_policy != InitPolicy.SCHEDULE_ONLY
        ):
            return self._reconcile_cluster()
        return self._reconcile_nodes()

    def _reconcile_cluster(self) -> Result:
        """Restart when the entire cluster is down."""
        if self.pfacts.are_all_pods_running_and_zero_installed():
            log.info("All pods are running and none of them have an installation.  Nothing to restart.")
            return Result()
        if self.pfacts.count_running_and_installed() == 0:
            log.info("Waiting for pods to come online that may need a Vertica restart")
            return Result(requeue=True)
        if not self.set_at_pod():
            log.info("No pod found to run admintools from. Requeue reconciliation.")
            return Result(requeue=True)

        # re_ip first: it speeds up the later checks.
        res = self.reip_nodes(self.pfacts.find_reip_pods(False))
        if res.requeue:
            return res

        db_does_not_exist = not self.pfacts.does_db_exist().is_true()
        if not db_does_not_exist and self._any_up_nodes_in_cluster_state():
            return Result(requeue=True)

        # Vertica thinks the nodes are down, so leftover processes can go.
        self.kill_old_processes(self.pfacts.find_restartable_pods())

        if db_does_not_exist:
            return Result()
        return self.restart_cluster()

    def _reconcile_nodes(self) -> Result:
        """Restart down pods and re_ip pods rescheduled since their install."""
        down_pods = self.pfacts.find_restartable_pods()
        if down_pods:
            if not self.set_at_pod():
                log.info("No pod found to run admintools from. Requeue reconciliation.")
                return Result(requeue=True)
            res = self.restart_pods(down_pods)
            if res.requeue or res.requeue_after > 0:
                return res

        # The compat21 node names are unknown when the operator didn't install.
        if self.vdb.init_policy == InitPolicy.SCHEDULE_ONLY:
            return Result()

        reip_pods = self.pfacts.find_reip_pods(True)
        if reip_pods:
            if not self.set_at_pod():
                log.info("No pod found to run admintools from. Requeue reconciliation.")
                return Result(requeue=True)
            return self.reip_nodes(reip_pods)
        return Result()

    def restart_pods(self, pods: list[PodFact]) -> Result:
        """Restart the down pods with admintools -t restart_node."""
        down_pods = self._remove_pods_with_cluster_up_state(pods)
        if not down_pods:
            # The cluster doesn't know yet that these pods are down.
            return Result(requeue=True)
        vnodes = gen_restart_vnode_list(down_pods)
        ips = gen_restart_ip_list(down_pods)

        self.kill_old_processes(down_pods)
        debug_dump_admintools_conf(self.runner, self.at_pod)

        cmd = self.gen_restart_node_cmd(vnodes, ips)
        try:
            self._exec_restart_pods(down_pods, cmd)
        except ExecError as err:
            if _NOT_ALL_DOWN in err.stdout:
                return Result(requeue_after=REQUEUE_WAIT_TIME_IN_SECONDS)
            raise RuntimeError(f"failed to restart pod(s) {err}") from err

        debug_dump_admintools_conf(self.runner, self.at_pod)
        self.pfacts.invalidate()
        return Result(requeue=len(pods) > len(down_pods))

    def _any_up_nodes_in_cluster_state(self) -> bool:
        return STATE_UP in self.fetch_cluster_node_status().values()

    def _remove_pods_with_cluster_up_state(self, pods: list[PodFact]) -> list[PodFact]:
        states = self.fetch_cluster_node_status()
        return [pf for pf in pods if states.get(pf.vnode_name) != STATE_UP]

    def fetch_cluster_node_status(self) -> dict[str, str]:
        """The cluster-wide state of each node, keyed by vnode name."""
        stdout, _ = self.runner.exec_admintools(
            self.at_pod, SERVER_CONTAINER, "-t", "list_allnodes"
        )
        return parse_cluster_node_status(stdout)

    def _exec_restart_pods(self, down_pods: list[PodFact], cmd: list[str]) -> str:
        names = ", ".join(pf.name.name for pf in down_pods)
        self._event(
            EVENT_NORMAL,
            NODE_RESTART_STARTED,
            f"Calling 'admintools -t restart_node' to restart the following pods: {names}",
        )
        start = time.monotonic()
        try:
            stdout, _ = self.runner.exec_admintools(self.at_pod, SERVER_CONTAINER, *cmd)
        except ExecError:
            self._event(
                EVENT_WARNING, NODE_RESTART_FAILED, "Failed while calling 'admintools -t restart_node'"
            )
            raise
        elapsed = time.monotonic() - start
        self._event(
            EVENT_NORMAL,
            NODE_RESTART_SUCCEEDED,
            f"Successfully called 'admintools -t restart_node' and it took {elapsed:.3f}s",
        )
        return stdout

    def reip_nodes(self, pods: list[PodFact]) -> Result:
        """Run admintools -t re_ip for the pods, unless no IP is changing."""
        # compat21 names are used since vnodes only exist once added to a db.
        old_ips = self._fetch_old_ips_from_node(self.at_pod)
        generated = self.gen_map_file(old_ips, pods)
        if generated is None:
            log.info("Could not generate the map file contents from nodes.  Requeue reconciliation.")
            return Result(requeue=True)
        contents, ip_changing = generated
        if not ip_changing:
            return Result()

        self.runner.exec_in_pod(self.at_pod, SERVER_CONTAINER, *gen_map_file_upload_cmd(contents))
        debug_dump_admintools_conf(self.runner, self.at_pod)
        try:
            self.runner.exec_admintools(self.at_pod, SERVER_CONTAINER, *gen_reip_command())
        except ExecError:
            self._event(EVENT_WARNING, REIP_FAILED, "Attempt to run 'admintools -t re_ip' failed")
            raise
        debug_dump_admintools_conf(self.runner, self.at_pod)
        return Result()

    def restart_cluster(self) -> Result:
        """Run admintools -t start_db; re_ip is assumed to have been done."""
        cmd = ["-t", "start_db", f"--database={self.vdb.db_name}", "--noprompt"]
        if self.vdb.ignore_cluster_lease:
            cmd.append("--ignore-cluster-lease")
        if self.vdb.restart_timeout:
            cmd.append(f"--timeout={self.vdb.restart_timeout}")
        self._event(
            EVENT_NORMAL, CLUSTER_RESTART_STARTED, "Calling 'admintools -t start_db' to restart the cluster"
        )
        start = time.monotonic()
        try:
            self.runner.exec_admintools(self.at_pod, SERVER_CONTAINER, *cmd)
        except ExecError:
            self._event(
                EVENT_WARNING, CLUSTER_RESTART_FAILED, "Failed while calling 'admintools -t start_db'"
            )
            raise
        elapsed = time.monotonic() - start
        self._event(
            EVENT_NORMAL,
            CLUSTER_RESTART_SUCCEEDED,
            f"Successfully called 'admintools -t start_db' and it took {elapsed:.3f}s",
        )
        return Result()

    def kill_old_processes(self, pods: Iterable[PodFact]) -> None:
        """Kill any vertica process still running in the pods."""
        cmd = ("bash", "-c", "for pid in $(pgrep ^vertica$); do kill -n SIGKILL $pid; done")
        for pf in pods:
            self.runner.exec_in_pod(pf.name, SERVER_CONTAINER, *cmd)

    def gen_restart_node_cmd(self, vnode_list: list[str], ip_list: list[str]) -> list[str]:
        cmd = [
            "-t",
            "restart_node",
            f"--database={self.vdb.db_name}",
            "--hosts=" + ",".join(vnode_list),
            "--new-host-ips=" + ",".join(ip_list),
            "--noprompt",
        ]
        if self.vdb.restart_timeout:
            cmd.append(f"--timeout={self.vdb.restart_timeout}")
        return cmd

    def _fetch_old_ips_from_node(self, at_pod: NamespacedName) -> dict[str, str]:
        """Old IPs from the pod's admintools.conf, keyed by compat21 node name."""
        stdout, _ = self.runner.exec_in_pod(at_pod, SERVER_CONTAINER, *self._gen_grep_node_cmd())
        return parse_nodes_from_admintool_conf(stdout)

    @staticmethod
    def _gen_grep_node_cmd() -> list[str]:
        return ["bash", "-c", f"grep --regexp='^node[0-9]' {ADMINTOOLS_CONF}"]

    def gen_map_file(
        self, old_ips: dict[str, str], pods: list[PodFact]
    ) -> tuple[list[str], bool] | None:
        """Lines of the re_ip map file and whether any IP changes.

        Returns None when no map can be built yet: no pods, or a pod not running.
        """
        if not pods:
            log.info("No pods qualify.  Need to requeue restart reconciler.")
            return None
        contents: list[str] = []
        ip_changing = False
        for pf in pods:
            if not pf.is_pod_running:
                log.info("Not all pods are running.  Need to requeue restart reconciler. pod=%s", pf.name)
                return None
            old_ip = old_ips.get(pf.compat21_node_name)
            # re_ip accepts a subset of nodes; the host may already be gone.
            if old_ip is None:
                continue
            if old_ip != pf.pod_ip:
                ip_changing = True
            contents.append(f"{old_ip} {pf.pod_ip}")
        return contents, ip_changing

    def set_at_pod(self) -> bool:
        """Pick the pod to run admintools from, if not already picked."""
        if not self.at_pod:
            pf = self.pfacts.find_pod_to_run_admintools()
            if pf is None:
                return False
            self.at_pod = pf.name
        return True