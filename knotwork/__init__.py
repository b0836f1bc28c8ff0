"""
knotwork: federated semantic index over tree-structured projects.

Embeddings are mapped to Morton-order spatial keys for range-scan candidate
retrieval; search fans out over projects and merges by weighted score.
Typed links between nodes carry provenance and history, and an interaction
log biases link suggestions towards recent work.
"""

from .api import Workspace
from .cross_search import FederatedResult
from .errors import (
    IndexCorruptionError,
    KnotworkError,
    ProviderError,
    SearchCancelledError,
    SearchFailedError,
    ValidationError,
)
from .linker import LinkChain
from .reasoner import InferredRelation
from .types import Interaction, Link, Node, Project

__version__ = "0.1.0"

__all__ = [
    "Workspace",
    "FederatedResult",
    "LinkChain",
    "InferredRelation",
    "Node",
    "Project",
    "Link",
    "Interaction",
    "KnotworkError",
    "ValidationError",
    "ProviderError",
    "IndexCorruptionError",
    "SearchFailedError",
    "SearchCancelledError",
]
