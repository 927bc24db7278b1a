"""
Wire-level data contracts for plans and traces.

Models accept both camelCase (as produced by agents and the web playground)
and snake_case field names, and serialize with camelCase aliases.
Plans, actions and finished traces are frozen.
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_serializer, model_validator
from pydantic.alias_generators import to_camel


# ============================================================================
# ENUMS
# ============================================================================

class ExecutionMode(str, Enum):
    SIMULATE = "simulate"
    EXECUTE = "execute"


class ActionType(str, Enum):
    """Closed set of action types the engine knows how to run."""
    READ_BALANCE = "read_balance"
    X402_PAYMENT = "x402_payment"
    CONTRACT_CALL = "contract_call"
    READ_STATE = "read_state"
    APPROVE_TOKEN = "approve_token"
    CONDITION = "condition"
    LLM_AGENT = "llm_agent"


class StepStatus(str, Enum):
    SUCCESS = "success"
    SIMULATED = "simulated"
    PENDING = "pending"
    ERROR = "error"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ============================================================================
# PLAN
# ============================================================================

_ACTION_FIELDS = {"type", "stepId", "step_id", "description", "condition", "params"}


class ExecutionAction(_WireModel):
    """One typed action of a plan.

    Type-specific parameters (``token``, ``to``, ``amount`` ...) may be given
    flat on the action, as agents send them, or nested under ``params``; both
    end up in ``params``. Serialization flattens them back.
    """
    type: str
    step_id: Optional[str] = None
    description: Optional[str] = None
    condition: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_params(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("params") or {}, dict):
            return data
        params = dict(data.get("params") or {})
        known: Dict[str, Any] = {}
        for key, value in data.items():
            if key in _ACTION_FIELDS:
                known[key] = value
            else:
                params[key] = value
        known["params"] = params
        return known

    @model_serializer(mode="wrap")
    def _flatten_params(self, handler):
        data = handler(self)
        params = data.pop("params", None) or {}
        flat = dict(params)
        flat.update({k: v for k, v in data.items() if v is not None})
        return flat

    @property
    def action_type(self) -> Optional[ActionType]:
        try:
            return ActionType(self.type)
        except ValueError:
            return None

    def inputs(self) -> Dict[str, Any]:
        """Raw (unresolved) input values keyed by input name."""
        values = dict(self.params)
        if self.condition is not None:
            values.setdefault("condition", self.condition)
        return values


class ExecutionPlan(_WireModel):
    """Ordered actions submitted for one run. Position is execution order."""
    mode: ExecutionMode = ExecutionMode.SIMULATE
    plan_id: str = Field(default_factory=lambda: f"plan_{uuid4().hex[:12]}")
    actions: Tuple[ExecutionAction, ...] = ()
    context: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None
    fail_fast: bool = True

    def step_id(self, index: int) -> str:
        return self.actions[index].step_id or f"step_{index}"


class GraphNode(_WireModel):
    id: str
    type: Optional[str] = None


class GraphEdge(_WireModel):
    source: str
    target: str


class PlanGraph(_WireModel):
    """Node/edge view of a plan as drawn in the playground canvas.

    Node ids are matched to actions by step id. The graph never decides
    execution order.
    """
    nodes: Tuple[GraphNode, ...] = ()
    edges: Tuple[GraphEdge, ...] = ()


class StateSeed(_WireModel):
    """Optional starting point for simulate-mode virtual state."""
    wallet_address: Optional[str] = None
    balances: Dict[str, str] = Field(default_factory=dict)
    contracts: Optional[Dict[str, Dict[str, Any]]] = None


# ============================================================================
# TRACE
# ============================================================================

class ErrorEntry(_WireModel):
    kind: str
    message: str
    step: Optional[int] = None


class TraceStep(_WireModel):
    index: int
    step_id: str
    action: ExecutionAction
    status: StepStatus
    result: Optional[Dict[str, Any]] = None
    tx_hash: Optional[str] = None
    gas_used: Optional[str] = None
    gas_estimate: Optional[str] = None
    timestamp: int
    error: Optional[ErrorEntry] = None


class TransactionRef(_WireModel):
    step: int
    hash: str
    explorer_url: str


class TraceMetadata(_WireModel):
    started_at: int
    finished_at: int
    execution_time_ms: float
    total_gas: str = "0"
    transactions: Tuple[TransactionRef, ...] = ()


class TraceSummary(_WireModel):
    total_steps: int
    successful_steps: int
    failed_steps: int
    pending_steps: int


class ExecutionTrace(_WireModel):
    """Durable artifact of one engine invocation."""
    run_id: str
    plan_id: str
    mode: ExecutionMode
    status: RunStatus
    steps: Tuple[TraceStep, ...] = ()
    virtual_state: Optional[Dict[str, Any]] = None
    warnings: Tuple[str, ...] = ()
    errors: Tuple[ErrorEntry, ...] = ()
    metadata: TraceMetadata

    @computed_field
    @property
    def summary(self) -> TraceSummary:
        ok = {StepStatus.SUCCESS, StepStatus.SIMULATED}
        return TraceSummary(
            total_steps=len(self.steps),
            successful_steps=sum(1 for s in self.steps if s.status in ok),
            failed_steps=sum(1 for s in self.steps if s.status == StepStatus.ERROR),
            pending_steps=sum(1 for s in self.steps if s.status == StepStatus.PENDING),
        )
