"""Helper commands run inside the server container of pods."""

from __future__ import annotations

from collections.abc import Iterable

from .model import (
    ADMINTOOLS_CONF,
    LOCAL_DATA_PATH,
    SERVER_CONTAINER,
    ExecError,
    NamespacedName,
    VerticaDB,
)


def cleanup_local_files(vdb: VerticaDB, runner, pod_name: NamespacedName) -> None:
    """Remove local data and depot dirs left behind by a failed admintools run."""
    for path in (vdb.db_data_path(), vdb.depot_path()):
        try:
            runner.exec_in_pod(pod_name, SERVER_CONTAINER, "rm", "-r", path)
        except ExecError as err:
            # The path is already gone.
            if "No such file or directory" not in err.stderr:
                raise


def debug_dump_admintools_conf(runner, at_pod: NamespacedName) -> None:
    """Dump vital parts of admintools.conf; failures are ignored."""
    cmd = (
        "bash",
        "-c",
        f"ls -l {ADMINTOOLS_CONF} && grep '^node\\|^v_\\|^host' {ADMINTOOLS_CONF}",
    )
    try:
        runner.exec_in_pod(at_pod, SERVER_CONTAINER, *cmd)
    except ExecError:
        pass


def debug_dump_admintools_conf_for_pods(runner, pods: Iterable) -> None:
    for pod in pods:
        debug_dump_admintools_conf(runner, pod.name)


def change_depot_permissions(vdb: VerticaDB, runner, pods: Iterable) -> None:
    """Make dbadmin own the depot directory, which is mounted owned by root."""
    cmd = (
        "sudo",
        "chown",
        "dbadmin:verticadba",
        "-R",
        f"{LOCAL_DATA_PATH}/{vdb.pv_sub_path('depot')}",
    )
    for pod in pods:
        runner.exec_in_pod(pod.name, SERVER_CONTAINER, *cmd)