"""
Concept influence graph and its time decay.
"""

from src.influence.graph_builder import InfluenceGraphService, RebuildInfluenceResult

__all__ = [
    "InfluenceGraphService",
    "RebuildInfluenceResult",
]
