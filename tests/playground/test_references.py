import pytest

from playground_service.errors import ConditionSyntaxError, ErrorKind, StepReferenceError
from playground_service.references import (
    ReferenceResolver,
    find_embedded_references,
    find_references,
    parse_reference,
)


@pytest.fixture
def resolver():
    return ReferenceResolver()


def test_parse_reference_exact_match_only():
    ref = parse_reference("step_0.balance")
    assert ref.index == 0
    assert ref.path == ("balance",)
    assert parse_reference("step_2.parameters.amount").path == ("parameters", "amount")
    assert parse_reference("balance is step_0.balance") is None
    assert parse_reference("step_0") is None
    assert parse_reference("step_x.balance") is None
    assert parse_reference(42) is None


def test_resolves_earlier_step_output(resolver):
    completed = [{"token": "TCRO", "balance": "100"}]
    assert resolver.resolve("step_0.balance", completed, 1) == "100"


def test_non_reference_values_pass_through(resolver):
    completed = [{"balance": "100"}]
    assert resolver.resolve("0xB3fdA213Ad32798724aA7aF685a8DD46f3cbd7f7", completed, 1).startswith("0x")
    assert resolver.resolve("send step_0.balance now", completed, 1) == "send step_0.balance now"
    assert resolver.resolve(5, completed, 1) == 5


def test_structured_values_resolved_elementwise(resolver):
    completed = [{"balance": "100"}, {"parameters": {"amount": "2"}, "items": ["a", "b"]}]
    raw = {"ctx": {"balance": "step_0.balance"}, "args": ["step_1.parameters.amount", "literal", "step_1.items.1"]}
    assert resolver.resolve(raw, completed, 2) == {
        "ctx": {"balance": "100"},
        "args": ["2", "literal", "b"],
    }


def test_forward_reference_raises(resolver):
    with pytest.raises(StepReferenceError) as exc:
        resolver.resolve("step_1.balance", [{"balance": "100"}], 1)
    assert exc.value.kind == ErrorKind.REFERENCE


def test_self_reference_raises(resolver):
    with pytest.raises(StepReferenceError):
        resolver.resolve("step_0.balance", [], 0)


def test_reference_to_step_without_result_raises(resolver):
    with pytest.raises(StepReferenceError, match="produced no result"):
        resolver.resolve("step_0.balance", [None], 1)


def test_missing_path_raises(resolver):
    with pytest.raises(StepReferenceError, match="no value at 'nope'"):
        resolver.resolve("step_0.nope", [{"balance": "1"}], 1)


def test_find_references_walks_structures():
    refs = list(find_references({"a": ["step_0.x", {"b": "step_1.y"}], "c": "plain"}))
    assert [str(r) for r in refs] == ["step_0.x", "step_1.y"]


def test_find_embedded_references_in_expression():
    refs = find_embedded_references("step_0.balance > 10 && step_2.decision == 'execute'")
    assert [(r.index, r.field) for r in refs] == [(0, "balance"), (2, "decision")]


def test_find_embedded_references_skips_quoted_text():
    refs = find_embedded_references("step_0.decision == 'step_9.decision' || step_1.note != \"step_2.x\"")
    assert [str(r) for r in refs] == ["step_0.decision", "step_1.note"]


def test_find_embedded_references_rejects_bad_syntax():
    with pytest.raises(ConditionSyntaxError):
        find_embedded_references("step_0.balance # 1")
