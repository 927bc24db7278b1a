"""
Step-output references.

A reference is a string of the exact form ``step_<N>.<path>`` where ``path``
is one or more dot-separated segments (identifiers or list indices), e.g.
``step_0.balance`` or ``step_2.parameters.amount``. Only a value that *is*
a reference gets substituted; strings that merely contain one pass through.
"""

import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence, Tuple

from .errors import StepReferenceError
from .expressions import tokenize

_SEGMENT = r"(?:[A-Za-z_][A-Za-z0-9_]*|\d+)"
REFERENCE_RE = re.compile(rf"^step_(\d+)\.({_SEGMENT}(?:\.{_SEGMENT})*)$")


@dataclass(frozen=True)
class StepReference:
    index: int
    path: Tuple[str, ...]

    @property
    def field(self) -> str:
        return self.path[0]

    def __str__(self) -> str:
        return f"step_{self.index}." + ".".join(self.path)


def parse_reference(value: Any) -> Optional[StepReference]:
    """Return the StepReference if ``value`` is exactly a reference, else None."""
    if not isinstance(value, str):
        return None
    m = REFERENCE_RE.match(value.strip())
    if not m:
        return None
    return StepReference(int(m.group(1)), tuple(m.group(2).split(".")))


def find_references(value: Any) -> Iterator[StepReference]:
    """Yield every exact reference in ``value``, walking dicts and lists."""
    if isinstance(value, dict):
        for v in value.values():
            yield from find_references(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from find_references(v)
    else:
        ref = parse_reference(value)
        if ref is not None:
            yield ref


def find_embedded_references(expression: str) -> List[StepReference]:
    """References used as names in a condition expression; quoted strings are ignored.

    Raises ConditionSyntaxError when the expression cannot be tokenized.
    """
    refs = []
    for kind, value in tokenize(expression or ""):
        ref = parse_reference(value) if kind == "name" else None
        if ref is not None:
            refs.append(ref)
    return refs


class ReferenceResolver:
    """Substitutes references with values from already-completed steps.

    ``completed_steps`` holds one entry per recorded step: the step's result
    dict, or None when the step produced no result (pending or error).
    """

    def resolve(self, raw: Any, completed_steps: Sequence[Optional[dict]], position: int) -> Any:
        if isinstance(raw, dict):
            return {k: self.resolve(v, completed_steps, position) for k, v in raw.items()}
        if isinstance(raw, list):
            return [self.resolve(v, completed_steps, position) for v in raw]
        ref = parse_reference(raw)
        if ref is None:
            return raw
        return self.lookup(ref, completed_steps, position)

    def lookup(self, ref: StepReference, completed_steps: Sequence[Optional[dict]], position: int) -> Any:
        if ref.index >= position:
            raise StepReferenceError(f"{ref} refers to a step that does not precede step {position}")
        if ref.index >= len(completed_steps):
            raise StepReferenceError(f"{ref} refers to step {ref.index}, which has not been recorded")
        result = completed_steps[ref.index]
        if result is None:
            raise StepReferenceError(f"{ref} refers to step {ref.index}, which produced no result")

        current: Any = result
        for segment in ref.path:
            if isinstance(current, dict) and segment in current:
                current = current[segment]
            elif isinstance(current, (list, tuple)) and segment.isdigit() and int(segment) < len(current):
                current = current[int(segment)]
            else:
                raise StepReferenceError(f"{ref}: step {ref.index} has no value at '{segment}'")
        return current
