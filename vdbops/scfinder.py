"""Discovery of subclusters and the objects created for them."""

from __future__ import annotations

import enum

from .model import (
    KIND_SERVICE,
    KIND_STATEFULSET,
    SUBCLUSTER_LABEL,
    KubeObject,
    Subcluster,
    VerticaDB,
)


class FindFlags(enum.IntFlag):
    # Subclusters that appear in the vdb.
    IN_VDB = 1
    # Subclusters that do not appear in the vdb, e.g. ones being deleted.
    NOT_IN_VDB = 2
    ALL = IN_VDB | NOT_IN_VDB


class SubclusterFinder:
    """Finds subclusters, and the objects owned by the operator for them."""

    def __init__(self, client, vdb: VerticaDB) -> None:
        self.client = client
        self.vdb = vdb
        self.subclusters = vdb.subcluster_map()

    def find_stateful_sets(self, flags: FindFlags) -> list[KubeObject]:
        return self._build_obj_list(KIND_STATEFULSET, flags)

    def find_services(self, flags: FindFlags) -> list[KubeObject]:
        return self._build_obj_list(KIND_SERVICE, flags)

    def find_subclusters(self, flags: FindFlags) -> list[Subcluster]:
        """Return subclusters in the vdb, not in the vdb, or both."""
        found: list[Subcluster] = []
        if flags & FindFlags.IN_VDB:
            found.extend(self.vdb.subclusters)
        if flags & FindFlags.NOT_IN_VDB:
            # Statefulsets of missing subclusters become stubs holding only the name.
            found.extend(
                Subcluster(name=sts.labels.get(SUBCLUSTER_LABEL, ""))
                for sts in self.find_stateful_sets(FindFlags.NOT_IN_VDB)
            )
        return found

    def _list_owned_by_operator(self, kind: str) -> list[KubeObject]:
        return list(
            self.client.list(kind, namespace=self.vdb.namespace, labels=self.vdb.operator_labels())
        )

    def _has_subcluster_label_from_vdb(self, labels: dict[str, str]) -> bool:
        return labels.get(SUBCLUSTER_LABEL) in self.subclusters

    def _build_obj_list(self, kind: str, flags: FindFlags) -> list[KubeObject]:
        objs = self._list_owned_by_operator(kind)
        if flags & FindFlags.ALL == FindFlags.ALL:
            return objs
        selected = []
        for obj in objs:
            if obj.kind not in (KIND_STATEFULSET, KIND_SERVICE):
                raise ValueError(f"could not find labels from k8s object {obj}")
            # Cluster-wide objects, like the headless service, are skipped.
            if SUBCLUSTER_LABEL not in obj.labels:
                continue
            in_vdb = self._has_subcluster_label_from_vdb(obj.labels)
            if (flags & FindFlags.IN_VDB and in_vdb) or (flags & FindFlags.NOT_IN_VDB and not in_vdb):
                selected.append(obj)
        return selected