"""Knowledge graph of History Bowl entities plus per-node study progress.

Nodes (people, events, places, concepts) and the typed relationships between
them live in a local SQLite DB next to the learner's star/platinum progress.
"""

from .progress import MODES, UserProgress
from .sqlite_graph import Node, Relationship, normalize_division
from .store import GraphStore, StorageUnavailable

__all__ = [
    "MODES",
    "GraphStore",
    "Node",
    "Relationship",
    "StorageUnavailable",
    "UserProgress",
    "normalize_division",
]
