"""Reconciliation logic for a Vertica database on Kubernetes: pod facts, subcluster
discovery, status roll-up, revive and restart."""

__version__ = "0.1.0"