"""
Burst aggregation of incoming files.
"""
from .aggregator import BurstAggregator
from .keys import CollectionKey

__all__ = [
    "BurstAggregator",
    "CollectionKey",
]
