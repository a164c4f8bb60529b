"""
Declared resource graph: nodes, references and the graph builder.
"""

from .models import KIND_OUTPUTS, ResourceKind, Lifecycle, Reference, DataRef, ResourceNode, symbolic
from .builder import ResourceGraph, build_graph

__all__ = [
    "KIND_OUTPUTS",
    "ResourceKind",
    "Lifecycle",
    "Reference",
    "DataRef",
    "ResourceNode",
    "ResourceGraph",
    "build_graph",
    "symbolic",
]
