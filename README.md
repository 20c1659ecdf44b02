# vdbops

`vdbops` holds the decision logic that keeps a Vertica database healthy when it runs
as a set of Kubernetes statefulsets. It does not talk to Kubernetes or to the pods on
its own. You supply the collaborators, and the package decides what to run and in
what order.

## Collaborators you supply

The package uses duck typing for everything outside it:

- **client**: an object for the Kubernetes API with `get(kind, name)`,
  `list(kind, namespace=..., labels=...)` and `update(obj)`. `get` must raise
  `vdbops.model.NotFoundError` when the object does not exist. Objects come back as
  `vdbops.model.KubeObject` values with `kind`, `name`, `labels`, `spec` and `status`.
- **runner**: executes commands in pods with `exec_in_pod(pod, container, *cmd)`,
  `exec_admintools(pod, container, *cmd)` and `exec_vsql(pod, container, *cmd)`.
  Each returns `(stdout, stderr)` and raises `vdbops.model.ExecError`, which carries
  `stdout` and `stderr`, when the command fails.
- **recorder**: receives events through `event(obj, event_type, reason, message)`.
  `ReviveDBReconciler` and `RestartReconciler` use it.

## Modules

- `vdbops.model`: the shared data. It has `VerticaDB`, `Subcluster`,
  `SubclusterPodCount`, the status records `VerticaDBStatus`, `SubclusterStatus` and
  `PodStatus`, and `NamespacedName`, `TriState`, `InitPolicy`, `Condition`,
  `KubeObject`, `Result`, `NotFoundError` and `ExecError`. `VerticaDB` derives names
  and paths with `sts_name`, `pod_name`, `ext_svc_name`, `db_data_path`, `depot_path`,
  `communal_path`, `pv_sub_path`, `installer_indicator_file` and `operator_labels`.
- `vdbops.scfinder`: `SubclusterFinder` lists the statefulsets, services and
  subclusters the operator owns. Its `find_stateful_sets`, `find_services` and
  `find_subclusters` methods take a `FindFlags` value (`IN_VDB`, `NOT_IN_VDB`, `ALL`)
  that selects the ones in the database spec, the ones no longer in it, or both.
- `vdbops.commands`: helpers that run in the server container.
  `cleanup_local_files` removes the local data and depot directories.
  `debug_dump_admintools_conf` and `debug_dump_admintools_conf_for_pods` dump
  `admintools.conf`. `change_depot_permissions` gives `dbadmin` ownership of the depot.
- `vdbops.podfacts`: `PodFacts.collect(vdb)` gathers a `PodFact` for every pod. A fact
  records whether the pod exists and is running, whether Vertica is installed, whether
  the database exists there and whether the node is up, along with its vnode and
  compat21 node names. The facts are cached until `invalidate()` is called. Query
  methods include `does_db_exist`, `any_pods_missing_db`, `find_pods_with_missing_db`,
  `find_restartable_pods`, `find_reip_pods`, `find_pod_to_run_admintools` and
  `get_up_node_count`. The module also has `parse_vertica_node_name` and
  `gen_pod_names`.
- `vdbops.status`: `StatusReconciler.reconcile()` rolls the pod facts up into
  `vdb.status` as per-pod, per-subcluster and cluster-wide counts. It then writes the
  vdb back with `client.update`.
- `vdbops.revive`: `ReviveDBReconciler` orders the pods by the vdb's `revive_order` with
  `get_pod_list()` and builds the `admintools -t revive_db` arguments with `gen_cmd()`.
  `exec_cmd()` runs them. It turns known failures into a requeue: cluster lease not
  expired, missing bucket, bad endpoint, database not found, permission denied and node
  count mismatch. Any other failure is re-raised.
- `vdbops.restart`: `RestartReconciler.reconcile()` records the `AutoRestartVertica`
  condition and then restarts nodes that are down using `restart_node`. When no node is
  up and the init policy is not `ScheduleOnly`, it runs `re_ip` first, kills leftover
  processes and restarts the whole cluster with `start_db`. The module also has
  parsers for `list_allnodes` output and `admintools.conf` node lines.

## Example

```python
from vdbops.model import Subcluster, VerticaDB
from vdbops.podfacts import PodFacts
from vdbops.restart import RestartReconciler

vdb = VerticaDB(subclusters=[Subcluster("main", 3)])
facts = PodFacts(client, runner)  # your API client and pod runner
facts.collect(vdb)

print(facts.get_up_node_count(), "nodes up")
for pod in facts.find_restartable_pods():
    print("needs restart:", pod.name.name)

result = RestartReconciler(client, recorder, vdb, runner, facts).reconcile()
if result.requeue or result.requeue_after:
    print("try again later")
```

Reconcilers return a `Result`. Its `requeue` and `requeue_after` fields tell you whether
to try the work again later. Errors from the client or the runner are raised, not
returned.

## What it does not do

- It has no Kubernetes client, pod runner or event recorder of its own. You must
  provide them.
- It does not build or create statefulsets and services, and it does not create
  databases. It only finds the objects the operator owns and reasons about the pods in
  them.
- It has no command-line entry point and no controller loop. You call the reconcilers
  yourself.

## Installing and testing

```
pip install .
pip install ".[test]"
pytest
```