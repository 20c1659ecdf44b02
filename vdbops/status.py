"""Roll-up of pod facts into the status of a vdb."""

from __future__ import annotations

from .model import (
    KIND_STATEFULSET,
    NotFoundError,
    PodStatus,
    Result,
    Subcluster,
    SubclusterStatus,
    VerticaDB,
    VerticaDBStatus,
)
from .podfacts import PodFacts
from .scfinder import FindFlags, SubclusterFinder


class StatusReconciler:
    """Updates the status of the vdb from the pod facts."""

    def __init__(self, client, vdb: VerticaDB, pfacts: PodFacts) -> None:
        self.client = client
        self.vdb = vdb
        self.pfacts = pfacts

    def reconcile(self) -> Result:
        """Recompute the vdb status and write it back through the client."""
        self.pfacts.collect(self.vdb)

        # Subclusters scheduled for removal are reported until their
        # statefulsets are gone.
        finder = SubclusterFinder(self.client, self.vdb)
        subclusters = finder.find_subclusters(FindFlags.ALL)

        stat = self.vdb.status
        stat.subclusters = []
        for sc in subclusters:
            cur = SubclusterStatus()
            try:
                self.calculate_subcluster_status(sc, cur)
            except Exception as err:
                raise RuntimeError(
                    f"failed to calculate subcluster status {sc.name} {err}"
                ) from err
            stat.subclusters.append(cur)
        self.calculate_cluster_status(stat)

        self.client.update(self.vdb)
        return Result()

    def calculate_cluster_status(self, stat: VerticaDBStatus) -> None:
        """Sum the subcluster counts into the cluster-wide counts."""
        stat.subcluster_count = len(stat.subclusters)
        stat.install_count = sum(sc.install_count for sc in stat.subclusters)
        stat.added_to_db_count = sum(sc.added_to_db_count for sc in stat.subclusters)
        stat.up_node_count = sum(sc.up_node_count for sc in stat.subclusters)

    def calculate_subcluster_status(self, sc: Subcluster, cur_stat: SubclusterStatus) -> None:
        """Fill in the status of one subcluster from the pod facts."""
        cur_stat.name = sc.name
        self._resize_subcluster_status(sc, cur_stat)

        for index, pod_stat in enumerate(cur_stat.detail):
            pf = self.pfacts.detail.get(self.vdb.pod_name(sc, index))
            if pf is None:
                continue
            pod_stat.up_node = pf.up_node
            # Only running pods give reliable answers; keep the previous state
            # for pods whose state is unknown.
            if not pf.is_installed.is_none():
                pod_stat.installed = pf.is_installed.is_true()
            if not pf.db_exists.is_none():
                pod_stat.added_to_db = pf.db_exists.is_true()
                pod_stat.vnode_name = pf.vnode_name

        cur_stat.install_count = sum(1 for p in cur_stat.detail if p.installed)
        cur_stat.added_to_db_count = sum(1 for p in cur_stat.detail if p.added_to_db)
        cur_stat.up_node_count = sum(1 for p in cur_stat.detail if p.up_node)

    def _resize_subcluster_status(self, sc: Subcluster, cur_stat: SubclusterStatus) -> None:
        size = self._get_subcluster_size(sc)
        missing = size - len(cur_stat.detail)
        if missing > 0:
            cur_stat.detail.extend(PodStatus() for _ in range(missing))
        del cur_stat.detail[size:]

    def _get_subcluster_size(self, sc: Subcluster) -> int:
        """The larger of the subcluster size and the statefulset replica count."""
        try:
            sts = self.client.get(KIND_STATEFULSET, self.vdb.sts_name(sc))
        except NotFoundError:
            return sc.size
        except Exception as err:
            raise RuntimeError(f"could not fetch sts for subcluster {err}") from err
        return max(sc.size, int(sts.status.get("replicas", 0)))