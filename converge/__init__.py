"""Converge — declarative infrastructure reconciliation engine."""

from converge.engine import ApplyResult, Engine
from converge.errors import ConvergeError, PartialApplyError
from converge.graph import ResolvedGraph, ResourceGraph
from converge.models import (
    Action,
    AttributePath,
    LifecyclePolicy,
    Plan,
    Ref,
    ResourceAddress,
    ResourceNode,
    StateEntry,
    StateSnapshot,
)

__all__ = [
    "Action",
    "ApplyResult",
    "AttributePath",
    "ConvergeError",
    "Engine",
    "LifecyclePolicy",
    "PartialApplyError",
    "Plan",
    "Ref",
    "ResolvedGraph",
    "ResourceAddress",
    "ResourceGraph",
    "ResourceNode",
    "StateEntry",
    "StateSnapshot",
]
