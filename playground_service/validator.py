"""
Plan validation against the node registry.

``PlanValidator.validate`` never raises for a bad plan; it returns a
``ValidationReport`` whose ``errors`` are ``{kind, message, step}`` entries
and whose ``warnings`` are plain strings. A plan is runnable only when the
report is valid.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Set

from .errors import ConditionSyntaxError, ErrorKind, PlanValidationError, error_entry
from .node_registry import InputSpec, InputType, NodeRegistry
from .references import StepReference, find_embedded_references, find_references, parse_reference
from .schemas import ActionType, ExecutionMode, ExecutionPlan, PlanGraph

logger = logging.getLogger(__name__)

VALUE_MOVING_ACTIONS = (ActionType.X402_PAYMENT, ActionType.APPROVE_TOKEN, ActionType.CONTRACT_CALL)


@dataclass
class ValidationReport:
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PlanValidationError(self.errors, self.warnings)


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class PlanValidator:
    def __init__(self, registry: NodeRegistry):
        self.registry = registry

    def validate(self, plan: ExecutionPlan, graph: Optional[PlanGraph] = None) -> ValidationReport:
        report = ValidationReport()
        if not plan.actions:
            report.errors.append(error_entry(ErrorKind.VALIDATION, "Plan must contain at least one action"))
            return report

        seen_ids: Dict[str, int] = {}
        for position, action in enumerate(plan.actions):
            step_id = plan.step_id(position)
            if step_id in seen_ids:
                report.errors.append(error_entry(
                    ErrorKind.VALIDATION,
                    f"Duplicate step id '{step_id}' (already used by step {seen_ids[step_id]})",
                    position,
                ))
            else:
                seen_ids[step_id] = position

            definition = self.registry.get_definition(action.type)
            if definition is None:
                report.errors.append(error_entry(
                    ErrorKind.VALIDATION, f"Unknown action type '{action.type}'", position
                ))
                continue

            inputs = action.inputs()
            for spec in definition.inputs:
                value = inputs.get(spec.name)
                if _is_missing(value):
                    if spec.required and not spec.has_default:
                        report.errors.append(error_entry(
                            ErrorKind.VALIDATION,
                            f"Step {position} ({action.type}): missing required input '{spec.name}'",
                            position,
                        ))
                    continue
                for ref in find_references(value):
                    self._check_reference(ref, position, plan, report)
                if parse_reference(value) is None:
                    self._check_literal(spec, value, position, action.type, report)

            if definition.id == ActionType.CONDITION and isinstance(inputs.get("condition"), str):
                expression = inputs["condition"]
                if parse_reference(expression) is None:
                    try:
                        embedded = find_embedded_references(expression)
                    except ConditionSyntaxError as e:
                        report.errors.append(error_entry(
                            ErrorKind.VALIDATION, f"Step {position} (condition): {e.message}", position
                        ))
                        embedded = []
                    for ref in embedded:
                        self._check_reference(ref, position, plan, report)

            if plan.mode == ExecutionMode.EXECUTE and definition.id in VALUE_MOVING_ACTIONS:
                report.warnings.append(
                    f"Step {position} ({action.type}) will submit a real transaction in execute mode"
                )

        if graph is not None:
            self._check_graph(plan, graph, report)

        if not report.valid:
            logger.info("plan %s rejected with %d validation error(s)", plan.plan_id, len(report.errors))
        return report

    def _check_reference(self, ref: StepReference, position: int, plan: ExecutionPlan,
                         report: ValidationReport) -> None:
        if ref.index >= position:
            report.errors.append(error_entry(
                ErrorKind.REFERENCE,
                f"Step {position}: {ref} must reference an earlier step",
                position,
            ))
            return
        target = self.registry.get_definition(plan.actions[ref.index].type)
        if target is None:
            # The unknown type is reported on its own step
            return
        if ref.field not in target.output_names:
            report.errors.append(error_entry(
                ErrorKind.REFERENCE,
                f"Step {position}: {ref} is not an output of step {ref.index} ({target.id.value}); "
                f"available: {', '.join(target.output_names)}",
                position,
            ))

    @staticmethod
    def _check_literal(spec: InputSpec, value: Any, position: int, action_type: str,
                       report: ValidationReport) -> None:
        prefix = f"Step {position} ({action_type}): input '{spec.name}'"
        rule = spec.validation

        if spec.type == InputType.NUMERIC:
            if isinstance(value, bool):
                report.errors.append(error_entry(ErrorKind.VALIDATION, f"{prefix} must be numeric", position))
                return
            try:
                number = Decimal(str(value).strip())
            except InvalidOperation:
                number = None
            if number is None or not number.is_finite():
                report.errors.append(error_entry(ErrorKind.VALIDATION, f"{prefix} must be numeric", position))
                return
            if rule is not None and rule.min is not None and number < Decimal(str(rule.min)):
                report.errors.append(error_entry(
                    ErrorKind.VALIDATION, f"{prefix} must be at least {rule.min}", position
                ))
            if rule is not None and rule.max is not None and number > Decimal(str(rule.max)):
                report.errors.append(error_entry(
                    ErrorKind.VALIDATION, f"{prefix} must be at most {rule.max}", position
                ))
            if rule is not None and rule.integer and number != number.to_integral_value():
                report.errors.append(error_entry(
                    ErrorKind.VALIDATION, f"{prefix} must be a whole number", position
                ))
            return

        if spec.type == InputType.BOOLEAN:
            if not isinstance(value, bool) and str(value).lower() not in ("true", "false"):
                report.errors.append(error_entry(ErrorKind.VALIDATION, f"{prefix} must be a boolean", position))
            return

        if spec.type == InputType.STRUCTURED or rule is None:
            return

        text = str(value)
        if not rule.matches(text):
            report.errors.append(error_entry(
                ErrorKind.VALIDATION, f"{prefix} has invalid format: {text!r}", position
            ))
        if rule.options and text not in rule.options:
            report.errors.append(error_entry(
                ErrorKind.VALIDATION,
                f"{prefix} must be one of {', '.join(rule.options)}",
                position,
            ))

    @staticmethod
    def _check_graph(plan: ExecutionPlan, graph: PlanGraph, report: ValidationReport) -> None:
        positions = {plan.step_id(i): i for i in range(len(plan.actions))}
        connected: Set[str] = set()
        for edge in graph.edges:
            connected.add(edge.source)
            connected.add(edge.target)

        if len(graph.nodes) > 1:
            for node in graph.nodes:
                if node.id not in connected:
                    report.warnings.append(f"Node '{node.id}' is not connected to any other node")
        for node in graph.nodes:
            if node.id not in positions:
                report.warnings.append(f"Node '{node.id}' does not match any step in the plan")

        for edge in graph.edges:
            source, target = positions.get(edge.source), positions.get(edge.target)
            if source is not None and target is not None and source >= target:
                report.warnings.append(
                    f"Edge {edge.source} -> {edge.target} runs against the action order; "
                    "actions run in sequence order"
                )
