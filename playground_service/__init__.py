"""
Plan execution playground service.

Interprets ordered plans of typed ledger actions, resolving step-to-step
references, either as a dry run against virtual state (simulate) or against
a live ledger (execute), and records a replayable execution trace.
"""

from .engine import ExecutionEngine, TraceRecorder, TraceStore
from .node_registry import NodeRegistry, build_default_registry
from .schemas import ActionType, ExecutionAction, ExecutionMode, ExecutionPlan, ExecutionTrace

__all__ = [
    "ActionType",
    "ExecutionAction",
    "ExecutionEngine",
    "ExecutionMode",
    "ExecutionPlan",
    "ExecutionTrace",
    "NodeRegistry",
    "TraceRecorder",
    "TraceStore",
    "build_default_registry",
]
