import pytest

from vdbops.model import (
    Condition,
    ExecError,
    InitPolicy,
    NamespacedName,
    Result,
    Subcluster,
    TriState,
    VerticaDB,
)
from vdbops.podfacts import PodFact, PodFacts
from vdbops.restart import (
    ADMINTOOLS_MAP_FILE,
    REQUEUE_WAIT_TIME_IN_SECONDS,
    RestartReconciler,
    gen_map_file_upload_cmd,
    gen_reip_command,
    gen_restart_ip_list,
    gen_restart_vnode_list,
    parse_cluster_node_status,
    parse_nodes_from_admintool_conf,
)

HEADER = (
    " Node          | Host       | State | Version                 | DB\n"
    "---------------+------------+-------+-------------------------+----\n"
)


class FakeClient:
    def __init__(self):
        self.updated = []

    def update(self, obj):
        self.updated.append(obj)


class FakeRecorder:
    def __init__(self):
        self.events = []

    def event(self, obj, event_type, reason, message):
        self.events.append((event_type, reason, message))

    @property
    def reasons(self):
        return [e[1] for e in self.events]


class FakeRunner:
    """Answers commands by the first response key found in the joined command."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.history = []

    def _run(self, kind, pod, cmd):
        self.history.append((kind, pod, list(cmd)))
        joined = " ".join(cmd)
        for key, (stdout, stderr, fail) in self.responses.items():
            if key in joined:
                if fail:
                    raise ExecError("failed", stdout=stdout, stderr=stderr)
                return stdout, stderr
        return "", ""

    def exec_in_pod(self, pod, container, *cmd):
        return self._run("pod", pod, cmd)

    def exec_admintools(self, pod, container, *cmd):
        return self._run("at", pod, cmd)

    def exec_vsql(self, pod, container, *cmd):
        return self._run("vsql", pod, cmd)

    def admintools_cmds(self):
        return [cmd for kind, _, cmd in self.history if kind == "at"]


def make_setup(pods, responses=None, **vdb_kwargs):
    vdb = VerticaDB(subclusters=[Subcluster("sc1", len(pods))], **vdb_kwargs)
    client = FakeClient()
    runner = FakeRunner(responses)
    recorder = FakeRecorder()
    pfacts = PodFacts(client, runner)
    pfacts.need_collection = False
    for pf in pods:
        pfacts.detail[pf.name] = pf
    return vdb, client, runner, recorder, pfacts


def pod(vdb_name_index, **kwargs):
    name = VerticaDB().pod_name(Subcluster("sc1"), vdb_name_index)
    defaults = dict(
        name=name,
        subcluster="sc1",
        exists=True,
        is_pod_running=True,
        is_installed=TriState.TRUE,
        db_exists=TriState.TRUE,
    )
    defaults.update(kwargs)
    return PodFact(**defaults)


def test_parse_cluster_node_status():
    out = HEADER + (
        "   v_db_node0001 | 10.244.1.6 | UP    | vertica-11.0.0.20210309 | db\n"
        "   v_db_node0002 | 10.244.1.7 | DOWN  | vertica-11.0.0.20210309 | db\n"
    )
    assert parse_cluster_node_status(out) == {"v_db_node0001": "UP", "v_db_node0002": "DOWN"}


def test_parse_cluster_node_status_header_only():
    assert parse_cluster_node_status(HEADER.rstrip("\n")) == {}
    assert parse_cluster_node_status("") == {}


def test_parse_nodes_from_admintool_conf():
    text = (
        "node0001 = 10.244.1.6,/data,/data\n"
        "node0002 = 10.244.1.7,/data,/data\n"
        "v_db_node0001 = 10.1.1.1,/data,/data\n"
        "node12 = 10.1.1.2,/data,/data"
    )
    assert parse_nodes_from_admintool_conf(text) == {
        "node0001": "10.244.1.6",
        "node0002": "10.244.1.7",
    }


def test_map_file_and_reip_commands():
    cmd = gen_map_file_upload_cmd(["1.1.1.1 2.2.2.2", "3.3.3.3 4.4.4.4"])
    assert cmd == [
        "bash",
        "-c",
        "cat > /opt/vertica/config/ipMap.txt<<< '1.1.1.1 2.2.2.2\n3.3.3.3 4.4.4.4'",
    ]
    assert gen_reip_command() == ["-t", "re_ip", f"--file={ADMINTOOLS_MAP_FILE}", "--noprompt"]


def test_vnode_and_ip_lists_keep_order():
    pods = [pod(0, vnode_name="v_a", pod_ip="10.0.0.1"), pod(1, vnode_name="v_b", pod_ip="10.0.0.2")]
    assert gen_restart_vnode_list(pods) == ["v_a", "v_b"]
    assert gen_restart_ip_list(pods) == ["10.0.0.1", "10.0.0.2"]


def test_gen_map_file_detects_changes_and_skips_missing():
    p0 = pod(0, compat21_node_name="node0001", pod_ip="10.0.0.9")
    p1 = pod(1, compat21_node_name="node0002", pod_ip="10.0.0.2")
    p2 = pod(2, compat21_node_name="node0003", pod_ip="10.0.0.3")
    vdb, client, runner, recorder, pfacts = make_setup([p0, p1, p2])
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    old = {"node0001": "10.0.0.1", "node0002": "10.0.0.2"}
    assert r.gen_map_file(old, [p0, p1, p2]) == (["10.0.0.1 10.0.0.9", "10.0.0.2 10.0.0.2"], True)
    assert r.gen_map_file(old, [p1]) == (["10.0.0.2 10.0.0.2"], False)


def test_gen_map_file_fails_without_pods_or_with_stopped_pod():
    p0 = pod(0, compat21_node_name="node0001", is_pod_running=False)
    vdb, client, runner, recorder, pfacts = make_setup([p0])
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    assert r.gen_map_file({"node0001": "10.0.0.1"}, []) is None
    assert r.gen_map_file({"node0001": "10.0.0.1"}, [p0]) is None


def test_gen_restart_node_cmd_with_timeout():
    vdb, client, runner, recorder, pfacts = make_setup([], restart_timeout=30)
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    cmd = r.gen_restart_node_cmd(["v_a", "v_b"], ["1.1.1.1", "2.2.2.2"])
    assert cmd == [
        "-t",
        "restart_node",
        "--database=vertdb",
        "--hosts=v_a,v_b",
        "--new-host-ips=1.1.1.1,2.2.2.2",
        "--noprompt",
        "--timeout=30",
    ]


def test_auto_restart_disabled_sets_condition_only():
    vdb, client, runner, recorder, pfacts = make_setup([pod(0)], auto_restart_vertica=False)
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    assert r.reconcile() == Result()
    assert vdb.status.conditions == [Condition("AutoRestartVertica", False)]
    assert client.updated == [vdb]
    assert runner.history == []


def test_set_at_pod_prefers_up_pod():
    p0 = pod(0)
    p1 = pod(1, up_node=True)
    vdb, client, runner, recorder, pfacts = make_setup([p0, p1])
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    assert r.set_at_pod() is True
    assert r.at_pod == p1.name


def test_set_at_pod_fails_without_candidates():
    vdb, client, runner, recorder, pfacts = make_setup([pod(0, is_installed=TriState.FALSE)])
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    assert r.set_at_pod() is False
    assert r.at_pod == NamespacedName()


def test_reconcile_restarts_down_node():
    down = pod(0, vnode_name="v_vertdb_node0001", pod_ip="10.0.0.1")
    up = pod(1, vnode_name="v_vertdb_node0002", pod_ip="10.0.0.2", up_node=True)
    status = HEADER + (
        " v_vertdb_node0001 | 10.0.0.1 | DOWN | v | vertdb\n"
        " v_vertdb_node0002 | 10.0.0.2 | UP | v | vertdb\n"
    )
    vdb, client, runner, recorder, pfacts = make_setup(
        [down, up], {"list_allnodes": (status, "", False)}
    )
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    assert r.reconcile() == Result()
    assert vdb.status.conditions == [Condition("AutoRestartVertica", True)]
    restart = [c for c in runner.admintools_cmds() if "restart_node" in c]
    assert restart == [r.gen_restart_node_cmd(["v_vertdb_node0001"], ["10.0.0.1"])]
    assert "NodeRestartSucceeded" in recorder.reasons
    assert pfacts.need_collection is True
    killed = [p for kind, p, c in runner.history if kind == "pod" and "pgrep" in " ".join(c)]
    assert killed == [down.name]


def test_restart_requeues_when_cluster_still_thinks_node_is_up():
    down = pod(0, vnode_name="v_vertdb_node0001")
    up = pod(1, vnode_name="v_vertdb_node0002", up_node=True)
    status = HEADER + " v_vertdb_node0001 | 10.0.0.1 | UP | v | vertdb\n"
    vdb, client, runner, recorder, pfacts = make_setup(
        [down, up], {"list_allnodes": (status, "", False)}
    )
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    assert r.reconcile() == Result(requeue=True)
    assert not any("restart_node" in c for c in runner.admintools_cmds())


def test_restart_pods_waits_when_nodes_not_down():
    down = pod(0, vnode_name="v_vertdb_node0001")
    vdb, client, runner, recorder, pfacts = make_setup(
        [down],
        {"restart_node": ("All nodes in the input are not down, can't restart", "", True)},
    )
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    r.at_pod = down.name
    res = r.restart_pods([down])
    assert res == Result(requeue_after=REQUEUE_WAIT_TIME_IN_SECONDS)
    assert "NodeRestartFailed" in recorder.reasons


def test_restart_pods_raises_on_unknown_failure():
    down = pod(0, vnode_name="v_vertdb_node0001")
    vdb, client, runner, recorder, pfacts = make_setup(
        [down], {"restart_node": ("*** Unknown error", "", True)}
    )
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    r.at_pod = down.name
    with pytest.raises(RuntimeError):
        r.restart_pods([down])


def test_reconcile_cluster_restarts_whole_cluster():
    p0 = pod(0, compat21_node_name="node0001", pod_ip="10.0.0.1", vnode_name="v_vertdb_node0001")
    status = HEADER + " v_vertdb_node0001 | 10.0.0.1 | DOWN | v | vertdb\n"
    vdb, client, runner, recorder, pfacts = make_setup(
        [p0],
        {
            "--regexp='^node[0-9]'": ("node0001 = 10.0.0.1,/data,/data\n", "", False),
            "list_allnodes": (status, "", False),
        },
    )
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    assert r.reconcile() == Result()
    cmds = runner.admintools_cmds()
    assert ["-t", "start_db", "--database=vertdb", "--noprompt"] in cmds
    assert gen_reip_command() not in cmds
    assert "ClusterRestartSucceeded" in recorder.reasons


def test_reconcile_cluster_runs_reip_when_ip_changed():
    p0 = pod(0, compat21_node_name="node0001", pod_ip="10.0.0.5", db_exists=TriState.FALSE)
    vdb, client, runner, recorder, pfacts = make_setup(
        [p0], {"--regexp='^node[0-9]'": ("node0001 = 10.0.0.1,/data,/data\n", "", False)}
    )
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    assert r.reconcile() == Result()
    assert gen_reip_command() in runner.admintools_cmds()
    uploads = [c for kind, _, c in runner.history if c == gen_map_file_upload_cmd(["10.0.0.1 10.0.0.5"])]
    assert len(uploads) == 1
    assert not any("start_db" in c for c in runner.admintools_cmds())


def test_reconcile_cluster_nothing_installed():
    p0 = pod(0, is_installed=TriState.FALSE, db_exists=TriState.FALSE)
    vdb, client, runner, recorder, pfacts = make_setup([p0])
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    assert r.reconcile() == Result()
    assert runner.history == []


def test_reconcile_cluster_requeues_when_no_running_install():
    p0 = pod(0, is_pod_running=False, is_installed=TriState.NONE)
    vdb, client, runner, recorder, pfacts = make_setup([p0])
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    assert r.reconcile() == Result(requeue=True)
    assert runner.history == []


def test_schedule_only_skips_cluster_path():
    p0 = pod(0, db_exists=TriState.FALSE)
    vdb, client, runner, recorder, pfacts = make_setup(
        [p0], init_policy=InitPolicy.SCHEDULE_ONLY
    )
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    assert r.reconcile() == Result()
    assert runner.history == []


def test_reip_failure_records_event_and_raises():
    p0 = pod(0, compat21_node_name="node0001", pod_ip="10.0.0.5")
    vdb, client, runner, recorder, pfacts = make_setup(
        [p0],
        {
            "--regexp='^node[0-9]'": ("node0001 = 10.0.0.1,/data,/data\n", "", False),
            "re_ip": ("", "", True),
        },
    )
    r = RestartReconciler(client, recorder, vdb, runner, pfacts)
    r.at_pod = p0.name
    with pytest.raises(ExecError):
        r.reip_nodes([p0])
    assert recorder.reasons == ["ReipFailed"]