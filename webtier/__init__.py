"""
webtier - declarative reconciliation engine for a load-balanced, autoscaling web tier.

This package resolves external lookups, builds the resource dependency graph,
plans lifecycle-aware changes, applies them with topological parallelism and
tracks health-driven target membership.
"""

__version__ = "0.1.0"
