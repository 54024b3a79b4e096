"""Reconcilers and the loop that drives them.

Controllers: ClusterReconciler (GCPCluster), IdentityReconciler (ServiceAccount).
"""

from workload_identity.controllers.cluster import ClusterReconciler
from workload_identity.controllers.identity import IdentityReconciler
from workload_identity.controllers.runtime import Controller, WorkQueue

__all__ = [
    "ClusterReconciler",
    "Controller",
    "IdentityReconciler",
    "WorkQueue",
]
