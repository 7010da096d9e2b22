"""
Cluster analytics: daily dynamics snapshots and identities.
"""

from src.cluster.dynamics import ClusterDynamicsService, ClusterDynamicsSnapshot
from src.cluster.identity import ClusterIdentity, ClusterIdentityService, extract_keywords

__all__ = [
    "ClusterDynamicsService",
    "ClusterDynamicsSnapshot",
    "ClusterIdentityService",
    "ClusterIdentity",
    "extract_keywords",
]
