"""
Execution engine.

Runs the actions of an ExecutionPlan strictly in sequence:

    Idle -> Validating -> Running(i) -> Completed | Aborted | Cancelled

Per step the engine resolves ``step_<N>.<path>`` references against the
results recorded so far, dispatches to the executor registered for the
action type and records exactly one TraceStep. A step that fails ends the
run (fail-fast) and every later step is recorded ``pending``; a
``condition`` that evaluates false closes the branch, so later steps are
recorded ``pending`` without being dispatched.

``ExecutionEngine.run`` never raises: every outcome, including unexpected
faults, ends up on the returned ExecutionTrace.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from pydantic import ValidationError

from . import metrics
from .config import Settings, get_settings
from .errors import (
    INTERNAL_ERROR_MESSAGE,
    ErrorKind,
    LedgerError,
    PlanValidationError,
    PlaygroundError,
    RunCancelledError,
    StepTimeoutError,
    error_entry,
)
from .executors import ActionExecutor, ExecutionContext, ExecutorOutcome, ExecutorRegistry
from .ledger import LedgerClient
from .node_registry import NodeRegistry
from .references import ReferenceResolver
from .schemas import (
    ErrorEntry,
    ExecutionAction,
    ExecutionMode,
    ExecutionPlan,
    ExecutionTrace,
    PlanGraph,
    RunStatus,
    StateSeed,
    StepStatus,
    TraceMetadata,
    TraceStep,
    TransactionRef,
)
from .state import LiveStateAdapter, StateAdapter, VirtualStateStore
from .validator import PlanValidator

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class EngineState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


# ============================================================================
# TRACE RECORDER
# ============================================================================

class TraceRecorder:
    """Accumulates steps, warnings and errors for one run, then freezes them into a trace."""

    def __init__(self, plan_id: str, mode: ExecutionMode, run_id: Optional[str] = None):
        self.run_id = run_id or uuid4().hex
        self.plan_id = plan_id
        self.mode = mode
        self.state = EngineState.IDLE
        self.steps: List[TraceStep] = []
        self.warnings: List[str] = []
        self.errors: List[Dict[str, Any]] = []
        self.started_at = now_ms()
        self._started = time.perf_counter()

    def transition(self, state: EngineState) -> None:
        logger.debug("run %s: %s -> %s", self.run_id, self.state.value, state.value)
        self.state = state

    def results(self) -> List[Optional[Dict[str, Any]]]:
        return [s.result for s in self.steps]

    def record(
        self,
        index: int,
        step_id: str,
        action: ExecutionAction,
        status: StepStatus,
        outcome: Optional[ExecutorOutcome] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> TraceStep:
        if index != len(self.steps):
            raise RuntimeError(f"step {index} recorded out of order (expected {len(self.steps)})")
        step = TraceStep(
            index=index,
            step_id=step_id,
            action=action,
            status=status,
            result=outcome.output if outcome is not None else None,
            tx_hash=outcome.tx_hash if outcome is not None else None,
            gas_used=outcome.gas_used if outcome is not None else None,
            gas_estimate=outcome.gas_estimate if outcome is not None else None,
            timestamp=now_ms(),
            error=ErrorEntry(**error) if error is not None else None,
        )
        self.steps.append(step)
        if outcome is not None:
            self.warnings.extend(outcome.warnings)
        metrics.steps_total.labels(action=action.type, status=status.value).inc()
        return step

    def add_error(self, entry: Dict[str, Any]) -> None:
        self.errors.append(entry)

    def add_warnings(self, warnings: List[str]) -> None:
        self.warnings.extend(warnings)

    def _total_gas(self) -> str:
        total = 0
        for step in self.steps:
            gas = step.gas_used if step.gas_used is not None else step.gas_estimate
            if gas:
                total += int(gas)
        return str(total)

    def finalize(
        self,
        status: RunStatus,
        virtual_state: Optional[Dict[str, Any]] = None,
        explorer_url: Optional[str] = None,
    ) -> ExecutionTrace:
        transactions: Tuple[TransactionRef, ...] = ()
        if self.mode == ExecutionMode.EXECUTE and explorer_url:
            base = explorer_url.rstrip("/")
            transactions = tuple(
                TransactionRef(step=s.index, hash=s.tx_hash, explorer_url=f"{base}/tx/{s.tx_hash}")
                for s in self.steps
                if s.tx_hash
            )
        elapsed_ms = round((time.perf_counter() - self._started) * 1000, 3)
        trace = ExecutionTrace(
            run_id=self.run_id,
            plan_id=self.plan_id,
            mode=self.mode,
            status=status,
            steps=tuple(self.steps),
            virtual_state=virtual_state if self.mode == ExecutionMode.SIMULATE else None,
            warnings=tuple(self.warnings),
            errors=tuple(ErrorEntry(**e) for e in self.errors),
            metadata=TraceMetadata(
                started_at=self.started_at,
                finished_at=now_ms(),
                execution_time_ms=elapsed_ms,
                total_gas=self._total_gas(),
                transactions=transactions,
            ),
        )
        metrics.runs_total.labels(mode=self.mode.value, status=status.value).inc()
        metrics.run_duration_seconds.labels(mode=self.mode.value).observe(elapsed_ms / 1000)
        return trace

    @classmethod
    def rejected(cls, plan_id: str, mode: ExecutionMode, errors: List[Dict[str, Any]],
                 warnings: Optional[List[str]] = None) -> ExecutionTrace:
        """Trace of a plan that never started: zero steps, validation errors attached."""
        recorder = cls(plan_id, mode)
        recorder.errors.extend(errors)
        recorder.warnings.extend(warnings or [])
        recorder.transition(EngineState.ABORTED)
        metrics.validation_failures_total.inc()
        return recorder.finalize(RunStatus.ABORTED)


# ============================================================================
# TRACE STORE
# ============================================================================

class TraceStore:
    """In-memory store of finished traces, purged after ``retention_seconds``."""

    def __init__(self, retention_seconds: int = 3600, max_entries: int = 500):
        self.retention_seconds = retention_seconds
        self.max_entries = max_entries
        self._traces: "OrderedDict[str, Tuple[float, ExecutionTrace]]" = OrderedDict()

    def purge(self) -> int:
        cutoff = time.monotonic() - self.retention_seconds
        expired = [run_id for run_id, (stored, _) in self._traces.items() if stored < cutoff]
        for run_id in expired:
            del self._traces[run_id]
        while len(self._traces) > self.max_entries:
            self._traces.popitem(last=False)
        return len(expired)

    def put(self, trace: ExecutionTrace) -> None:
        self._traces[trace.run_id] = (time.monotonic(), trace)
        self.purge()

    def get(self, run_id: str) -> Optional[ExecutionTrace]:
        self.purge()
        entry = self._traces.get(run_id)
        return entry[1] if entry is not None else None

    def recent(self, limit: int = 50) -> List[ExecutionTrace]:
        self.purge()
        return [trace for _, trace in reversed(list(self._traces.values()))][:limit]

    def __len__(self) -> int:
        return len(self._traces)


# ============================================================================
# ENGINE
# ============================================================================

class ExecutionEngine:
    def __init__(
        self,
        registry: NodeRegistry,
        executors: ExecutorRegistry,
        settings: Optional[Settings] = None,
        ledger: Optional[LedgerClient] = None,
        validator: Optional[PlanValidator] = None,
        resolver: Optional[ReferenceResolver] = None,
    ):
        self.registry = registry
        self.executors = executors
        self.settings = settings or get_settings()
        self.ledger = ledger
        self.validator = validator or PlanValidator(registry)
        self.resolver = resolver or ReferenceResolver()
        self.step_timeout = self.settings.STEP_TIMEOUT_SECONDS

    # ---------------------------------------------------------------- helpers

    @staticmethod
    def parse_plan(raw: Union[ExecutionPlan, Dict[str, Any]]) -> ExecutionPlan:
        if isinstance(raw, ExecutionPlan):
            return raw
        return ExecutionPlan.model_validate(raw)

    @staticmethod
    def parse_errors(exc: ValidationError) -> List[Dict[str, Any]]:
        return [
            error_entry(ErrorKind.VALIDATION, f"{'.'.join(str(p) for p in err['loc']) or 'plan'}: {err['msg']}")
            for err in exc.errors()
        ]

    async def build_state(self, plan: ExecutionPlan, seed: Optional[StateSeed] = None,
                          warnings: Optional[List[str]] = None) -> StateAdapter:
        """State for one run.

        Simulate mode seeds virtual state from ``seed`` when one is given, else
        from a snapshot of the ledger, else from settings. A ledger that cannot
        be read falls back to settings and adds a warning to ``warnings``.
        """
        tokens = list(self.settings.DEFAULT_BALANCES)
        contract_names = list(VirtualStateStore.default_contracts(self.settings))
        if plan.mode == ExecutionMode.SIMULATE:
            if seed is not None or self.ledger is None:
                return VirtualStateStore.from_settings(self.settings, seed)
            try:
                return await VirtualStateStore.from_ledger(
                    self.ledger, self.settings.WALLET_ADDRESS, tokens, contract_names
                )
            except LedgerError as e:
                logger.warning("could not seed virtual state from the ledger: %s", e.message)
                if warnings is not None:
                    warnings.append(f"Ledger unavailable ({e.message}); simulating with configured balances")
                return VirtualStateStore.from_settings(self.settings)
        if self.ledger is None:
            raise PlaygroundError("execute mode is unavailable: no ledger client configured")
        return LiveStateAdapter(
            ledger=self.ledger,
            address=self.settings.WALLET_ADDRESS,
            confirmation_timeout=self.settings.LEDGER_CONFIRMATION_TIMEOUT_SECONDS,
            tracked_tokens=tokens,
            tracked_contracts=contract_names,
        )

    async def _dispatch(
        self,
        executor: ActionExecutor,
        action: ExecutionAction,
        inputs: Dict[str, Any],
        state: StateAdapter,
        ctx: ExecutionContext,
        cancel_event: Optional[asyncio.Event],
    ) -> ExecutorOutcome:
        """Run one executor, bounded by the step timeout and the cancel event."""
        task = asyncio.ensure_future(executor.run(action, inputs, state, ctx))
        waiters = {task}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(waiters, timeout=self.step_timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError("run cancelled")
        raise StepTimeoutError(f"step {ctx.position} did not finish within {self.step_timeout}s")

    # -------------------------------------------------------------------- run

    async def run(
        self,
        plan: Union[ExecutionPlan, Dict[str, Any]],
        graph: Optional[Union[PlanGraph, Dict[str, Any]]] = None,
        seed: Optional[Union[StateSeed, Dict[str, Any]]] = None,
        state: Optional[StateAdapter] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionTrace:
        try:
            parsed = self.parse_plan(plan)
            if graph is not None and not isinstance(graph, PlanGraph):
                graph = PlanGraph.model_validate(graph)
            if seed is not None and not isinstance(seed, StateSeed):
                seed = StateSeed.model_validate(seed)
        except ValidationError as e:
            raw = plan if isinstance(plan, dict) else {}
            mode = ExecutionMode.EXECUTE if raw.get("mode") == "execute" else ExecutionMode.SIMULATE
            plan_id = str(raw.get("planId") or raw.get("plan_id") or "unknown")
            logger.info("plan %s could not be parsed: %s", plan_id, e.error_count())
            return TraceRecorder.rejected(plan_id, mode, self.parse_errors(e))

        recorder = TraceRecorder(parsed.plan_id, parsed.mode)
        try:
            return await self._run(parsed, recorder, graph, seed, state, cancel_event)
        except Exception:
            logger.exception("run %s failed with an internal error", recorder.run_id)
            recorder.add_error(error_entry(ErrorKind.INTERNAL, INTERNAL_ERROR_MESSAGE))
            recorder.transition(EngineState.ABORTED)
            return recorder.finalize(RunStatus.ABORTED)

    async def _run(
        self,
        plan: ExecutionPlan,
        recorder: TraceRecorder,
        graph: Optional[PlanGraph],
        seed: Optional[StateSeed],
        state: Optional[StateAdapter],
        cancel_event: Optional[asyncio.Event],
    ) -> ExecutionTrace:
        recorder.transition(EngineState.VALIDATING)
        report = self.validator.validate(plan, graph)
        try:
            report.raise_for_errors()
        except PlanValidationError as e:
            return TraceRecorder.rejected(plan.plan_id, plan.mode, e.errors, e.warnings)
        recorder.add_warnings(report.warnings)

        if state is None:
            state_warnings: List[str] = []
            try:
                state = await self.build_state(plan, seed, state_warnings)
            except PlaygroundError as e:
                return TraceRecorder.rejected(plan.plan_id, plan.mode,
                                              [error_entry(ErrorKind.VALIDATION, e.message)])
            recorder.add_warnings(state_warnings)

        logger.info("run %s started: plan=%s mode=%s actions=%d",
                    recorder.run_id, plan.plan_id, plan.mode.value, len(plan.actions))
        recorder.transition(EngineState.RUNNING)

        ok_status = StepStatus.SIMULATED if plan.mode == ExecutionMode.SIMULATE else StepStatus.SUCCESS
        branch_open = True
        aborted = False
        cancelled = False

        for index, action in enumerate(plan.actions):
            step_id = plan.step_id(index)

            if cancelled or (cancel_event is not None and cancel_event.is_set()):
                if not cancelled:
                    recorder.add_error(RunCancelledError("run cancelled").to_entry(index))
                cancelled = True
                recorder.record(index, step_id, action, StepStatus.PENDING,
                                error=RunCancelledError("run cancelled").to_entry())
                continue
            if aborted or not branch_open:
                recorder.record(index, step_id, action, StepStatus.PENDING)
                continue

            executor = self.executors.get(action.action_type)
            if executor is None:
                raise RuntimeError(f"no executor registered for {action.type}")
            ctx = ExecutionContext(
                mode=plan.mode,
                position=index,
                completed_steps=recorder.results(),
                resolver=self.resolver,
                plan_context=dict(plan.context),
                settings=self.settings,
            )

            logger.debug("run %s step %d (%s) dispatching", recorder.run_id, index, action.type)
            try:
                inputs = self.resolver.resolve(action.inputs(), ctx.completed_steps, index)
                outcome = await self._dispatch(executor, action, inputs, state, ctx, cancel_event)
            except RunCancelledError as e:
                logger.warning("run %s cancelled during step %d", recorder.run_id, index)
                recorder.add_error(e.to_entry(index))
                recorder.record(index, step_id, action, StepStatus.PENDING, error=e.to_entry())
                cancelled = True
                continue
            except PlaygroundError as e:
                logger.warning("run %s step %d (%s) failed: [%s] %s",
                               recorder.run_id, index, action.type, e.kind.value, e.message)
                recorder.add_error(e.to_entry(index))
                recorder.record(index, step_id, action, StepStatus.ERROR, error=e.to_entry())
                if plan.fail_fast:
                    aborted = True
                continue
            except Exception:
                logger.exception("run %s step %d (%s) raised an internal error",
                                 recorder.run_id, index, action.type)
                entry = error_entry(ErrorKind.INTERNAL, INTERNAL_ERROR_MESSAGE)
                recorder.add_error(dict(entry, step=index))
                recorder.record(index, step_id, action, StepStatus.ERROR, error=entry)
                aborted = True
                continue

            recorder.record(index, step_id, action, ok_status, outcome=outcome)
            if outcome.closes_branch:
                logger.info("run %s: condition at step %d is false; skipping remaining steps",
                            recorder.run_id, index)
                branch_open = False

        if cancelled:
            status, final = RunStatus.CANCELLED, EngineState.CANCELLED
        elif aborted:
            status, final = RunStatus.ABORTED, EngineState.ABORTED
        else:
            status, final = RunStatus.COMPLETED, EngineState.COMPLETED
        recorder.transition(final)

        virtual_state = await state.snapshot() if plan.mode == ExecutionMode.SIMULATE else None
        trace = recorder.finalize(status, virtual_state=virtual_state, explorer_url=self.settings.EXPLORER_URL)
        logger.info("run %s finished: status=%s steps=%d errors=%d",
                    trace.run_id, trace.status.value, len(trace.steps), len(trace.errors))
        return trace
