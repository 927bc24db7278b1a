import dataclasses

import pytest

from playground_service.node_registry import NodeCategory, build_default_registry
from playground_service.schemas import ActionType


def test_every_action_type_has_a_definition(registry):
    for action_type in ActionType:
        definition = registry.get_definition(action_type)
        assert definition is not None
        assert definition.id == action_type
    assert len(registry) == len(ActionType)


def test_lookup_by_string_and_unknown_type(registry):
    assert registry.get_definition("x402_payment").name == "x402 Payment"
    assert registry.get_definition("teleport") is None
    assert "teleport" not in registry


def test_definitions_are_frozen(registry):
    definition = registry.get_definition(ActionType.READ_BALANCE)
    with pytest.raises(dataclasses.FrozenInstanceError):
        definition.name = "changed"
    assert isinstance(definition.inputs, tuple)
    assert isinstance(definition.outputs, tuple)


def test_declared_outputs_match_executor_contract(registry):
    payment = registry.get_definition(ActionType.X402_PAYMENT)
    assert payment.output_names == ("from", "to", "amount", "token", "newBalance", "txHash", "status")
    agent = registry.get_definition(ActionType.LLM_AGENT)
    assert "raw_response" in agent.output_names
    assert registry.get_definition(ActionType.CONDITION).output_names == ("result", "branch", "expression")


def test_apply_defaults_fills_only_missing_inputs(registry):
    agent = registry.get_definition(ActionType.LLM_AGENT)
    values = agent.apply_defaults({"prompt": "go", "model": "gpt-4o"})
    assert values["model"] == "gpt-4o"
    assert values["agentId"] == "risk-analyzer"
    assert values["temperature"] == 0.7
    assert values["maxTokens"] == 500

    call = registry.get_definition(ActionType.CONTRACT_CALL)
    assert call.apply_defaults({})["args"] == []


def test_by_category(registry):
    queries = {d.id for d in registry.by_category("query")}
    assert queries == {ActionType.READ_BALANCE, ActionType.READ_STATE}
    transactions = {d.id for d in registry.by_category(NodeCategory.TRANSACTION)}
    assert transactions == {ActionType.X402_PAYMENT, ActionType.CONTRACT_CALL, ActionType.APPROVE_TOKEN}
    with pytest.raises(ValueError):
        registry.by_category("nonsense")


def test_to_dict_is_json_friendly():
    d = build_default_registry().get_definition("approve_token").to_dict()
    assert d["id"] == "approve_token"
    assert d["category"] == "transaction"
    assert d["gasEstimate"] == "50000"
    amount = next(i for i in d["inputs"] if i["name"] == "amount")
    assert amount["validation"] == {"pattern": r"^(\d+(\.\d+)?|max)$"}


def test_optional_address_and_variable_inputs(registry):
    read = {spec.name: spec for spec in registry.get_definition(ActionType.READ_BALANCE).inputs}
    assert not read["address"].required
    assert read["address"].validation.matches("0xB3fdA213Ad32798724aA7aF685a8DD46f3cbd7f7")
    assert not read["address"].validation.matches("0xB3fdA213Ad32798724aA7aF685a8DD46f3cbd7f7\n")
    condition = {spec.name: spec for spec in registry.get_definition(ActionType.CONDITION).inputs}
    assert not condition["variable"].required


def test_max_tokens_must_be_whole(registry):
    agent = {spec.name: spec for spec in registry.get_definition(ActionType.LLM_AGENT).inputs}
    assert agent["maxTokens"].validation.integer is True
    d = registry.get_definition(ActionType.LLM_AGENT).to_dict()
    max_tokens = next(i for i in d["inputs"] if i["name"] == "maxTokens")
    assert max_tokens["validation"] == {"min": 1, "max": 4000, "integer": True}
