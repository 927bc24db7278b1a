"""
Action executors.

One executor per ActionType, registered in an ``ExecutorRegistry``. The
engine hands each executor the action, its reference-resolved inputs, the
run's state adapter and an ``ExecutionContext``; the executor returns an
``ExecutorOutcome`` or raises a PlaygroundError subclass. Executors behave
the same in both modes: the bound state adapter decides whether a mutation
is virtual or submitted to the ledger.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import Settings, get_settings
from .errors import (
    ConditionSyntaxError,
    ExecutorError,
    InvalidAddressError,
    InvalidAmountError,
    PlaygroundError,
    ProviderError,
    StepTimeoutError,
    UnknownContractError,
)
from .expressions import evaluate_condition, tokenize
from .node_registry import ADDRESS_PATTERN, NodeDefinition, NodeRegistry
from .reasoning import ReasoningProvider, parse_decision
from .references import ReferenceResolver, parse_reference
from .schemas import ActionType, ExecutionAction, ExecutionMode
from .state import MAX_ALLOWANCE, NATIVE_TOKEN, StateAdapter, format_amount, parse_amount

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(ADDRESS_PATTERN)

# Bare name a condition uses for the wallet balance
WALLET_BALANCE_NAME = "balance"


@dataclass(frozen=True)
class ExecutorOutcome:
    output: Dict[str, Any]
    tx_hash: Optional[str] = None
    gas_used: Optional[str] = None
    gas_estimate: Optional[str] = None
    warnings: Tuple[str, ...] = ()
    # Set by a condition that evaluated false; the engine skips every later step
    closes_branch: bool = False


@dataclass
class ExecutionContext:
    """Per-step view of the run handed to executors."""
    mode: ExecutionMode
    position: int
    completed_steps: List[Optional[Dict[str, Any]]]
    resolver: ReferenceResolver
    plan_context: Dict[str, Any] = field(default_factory=dict)
    settings: Settings = field(default_factory=get_settings)


def require_address(value: Any, name: str) -> str:
    if not isinstance(value, str) or not _ADDRESS_RE.fullmatch(value):
        raise InvalidAddressError(f"{name} is not a valid address: {value!r}")
    return value


class ActionExecutor:
    action_type: ActionType

    def __init__(self, definition: NodeDefinition):
        self.definition = definition

    async def run(self, action: ExecutionAction, inputs: Dict[str, Any],
                  state: StateAdapter, ctx: ExecutionContext) -> ExecutorOutcome:
        values = self.definition.apply_defaults(inputs)
        return await self.execute(action, values, state, ctx)

    async def execute(self, action: ExecutionAction, inputs: Dict[str, Any],
                      state: StateAdapter, ctx: ExecutionContext) -> ExecutorOutcome:
        raise NotImplementedError


# ============================================================================
# QUERIES
# ============================================================================

class ReadBalanceExecutor(ActionExecutor):
    action_type = ActionType.READ_BALANCE

    async def execute(self, action, inputs, state, ctx):
        token = str(inputs["token"])
        warnings: Tuple[str, ...] = ()
        address = inputs.get("address")
        if address not in (None, ""):
            address = require_address(address, "address")
            balance = await state.balance_at(address, token)
            if balance is None:
                balance = "0"
                warnings = (f"No {token} balance known for {address}; reporting balance 0",)
        else:
            address = state.wallet_address
            if await state.has_token(token):
                balance = await state.balance_of(token)
            else:
                balance = "0"
                warnings = (f"Token {token} not found in wallet; reporting balance 0",)
        return ExecutorOutcome(
            output={"token": token, "balance": balance, "address": address},
            gas_estimate=self.definition.gas_estimate,
            warnings=warnings,
        )


class ReadStateExecutor(ActionExecutor):
    action_type = ActionType.READ_STATE

    async def execute(self, action, inputs, state, ctx):
        name = inputs.get("contract")
        if not name:
            raise ExecutorError("read_state requires a contract name")
        contract = await state.contract_of(name)
        if contract is None:
            raise UnknownContractError(f"unknown contract '{name}'")
        return ExecutorOutcome(
            output={
                "contract": name,
                "address": contract.address,
                "deployed": contract.deployed,
                "status": contract.status,
            },
            gas_estimate=self.definition.gas_estimate,
        )


# ============================================================================
# TRANSACTIONS
# ============================================================================

class X402PaymentExecutor(ActionExecutor):
    action_type = ActionType.X402_PAYMENT

    async def execute(self, action, inputs, state, ctx):
        to = require_address(inputs.get("to"), "recipient")
        amount = parse_amount(inputs.get("amount"))
        if amount <= 0:
            raise InvalidAmountError(f"payment amount must be greater than 0, got {format_amount(amount)}")
        token = str(inputs["token"])
        receipt = await state.transfer(token, amount, to, inputs.get("metadata"))
        return ExecutorOutcome(
            output={
                "from": state.wallet_address,
                "to": to,
                "amount": format_amount(amount),
                "token": token,
                "newBalance": receipt.new_balance,
                "txHash": receipt.tx_hash,
                "status": receipt.status,
            },
            tx_hash=receipt.tx_hash,
            gas_used=receipt.gas_used,
            gas_estimate=receipt.gas_estimate,
        )


class ContractCallExecutor(ActionExecutor):
    action_type = ActionType.CONTRACT_CALL

    @staticmethod
    def _args(raw: Any) -> List[Any]:
        if isinstance(raw, str):
            try:
                raw = json.loads(raw) if raw.strip() else []
            except json.JSONDecodeError:
                raise ExecutorError(f"contract_call args must be a JSON array, got {raw!r}")
        if not isinstance(raw, (list, tuple)):
            raise ExecutorError("contract_call args must be a list")
        return list(raw)

    async def execute(self, action, inputs, state, ctx):
        name = inputs.get("contract")
        method = str(inputs.get("method") or "").strip()
        if not name:
            raise ExecutorError("contract_call requires a contract name")
        if not method:
            raise ExecutorError("contract_call requires a method")
        args = self._args(inputs.get("args"))
        value = parse_amount(inputs.get("value"), "value")
        if value < 0:
            raise InvalidAmountError(f"value must not be negative, got {format_amount(value)}")
        contract = await state.contract_of(name)
        if contract is None:
            raise UnknownContractError(f"unknown contract '{name}'")
        receipt = await state.call_contract(name, method, args, value)
        return ExecutorOutcome(
            output={
                "contract": name,
                "address": contract.address,
                "method": method,
                "args": args,
                "value": format_amount(value),
                "result": receipt.result,
                "success": True,
                "txHash": receipt.tx_hash,
            },
            tx_hash=receipt.tx_hash,
            gas_used=receipt.gas_used,
            gas_estimate=receipt.gas_estimate,
        )


class ApproveTokenExecutor(ActionExecutor):
    action_type = ActionType.APPROVE_TOKEN

    async def execute(self, action, inputs, state, ctx):
        spender = require_address(inputs.get("spender"), "spender")
        raw_amount = inputs.get("amount")
        if str(raw_amount).strip().lower() == MAX_ALLOWANCE:
            amount = MAX_ALLOWANCE
        else:
            parsed = parse_amount(raw_amount)
            if parsed < 0:
                raise InvalidAmountError(f"allowance must not be negative, got {format_amount(parsed)}")
            amount = format_amount(parsed)
        token = str(inputs["token"])
        receipt = await state.approve(token, spender, amount)
        return ExecutorOutcome(
            output={
                "token": token,
                "spender": spender,
                "amount": amount,
                "allowance": receipt.allowance,
                "approved": True,
                "txHash": receipt.tx_hash,
            },
            tx_hash=receipt.tx_hash,
            gas_used=receipt.gas_used,
            gas_estimate=receipt.gas_estimate,
        )


# ============================================================================
# LOGIC
# ============================================================================

class ConditionExecutor(ActionExecutor):
    action_type = ActionType.CONDITION

    @staticmethod
    def _wallet_token(name: str) -> Optional[str]:
        """Token named by ``balance`` (native token) or ``balance.<TOKEN>``; None for other names."""
        parts = name.split(".")
        if parts[0] != WALLET_BALANCE_NAME or len(parts) > 2:
            return None
        return parts[1] if len(parts) == 2 else NATIVE_TOKEN

    @staticmethod
    def _name_resolver(ctx: ExecutionContext, wallet: Dict[str, str], bound: Dict[str, Any]):
        # Lookup order: bound variable, step reference, plan context, wallet balance
        def resolve(name: str) -> Any:
            if name in bound:
                return bound[name]
            ref = parse_reference(name)
            if ref is not None:
                return ctx.resolver.lookup(ref, ctx.completed_steps, ctx.position)
            if name.split(".")[0] in ctx.plan_context:
                current: Any = ctx.plan_context
                for segment in name.split("."):
                    if isinstance(current, dict) and segment in current:
                        current = current[segment]
                    else:
                        raise ConditionSyntaxError(f"unknown name '{name}' in condition")
                return current
            if name in wallet:
                return wallet[name]
            raise ConditionSyntaxError(f"unknown name '{name}' in condition")
        return resolve

    @staticmethod
    def _variable(raw: Any, resolved: Any, resolve) -> Any:
        if parse_reference(raw) is not None or not isinstance(raw, str):
            return resolved
        tokens = tokenize(raw)
        if len(tokens) != 1 or tokens[0][0] == "op":
            raise ConditionSyntaxError(f"variable must be a single name or literal, got {raw!r}")
        kind, value = tokens[0]
        return resolve(value) if kind == "name" else value

    async def execute(self, action, inputs, state, ctx):
        # The expression is evaluated from the raw action, not from resolved inputs,
        # so references inside it are looked up by the evaluator.
        raw = action.inputs()
        expression = raw.get("condition")
        if not isinstance(expression, str):
            raise ConditionSyntaxError("condition requires an expression string")

        names = [value for kind, value in tokenize(expression) if kind == "name"]
        raw_variable = raw.get("variable")
        if isinstance(raw_variable, str):
            names.append(raw_variable.strip())
        wallet: Dict[str, str] = {}
        for name in names:
            token = self._wallet_token(name)
            if token is not None and name not in wallet:
                wallet[name] = await state.balance_of(token)

        bound: Dict[str, Any] = {}
        if raw_variable not in (None, ""):
            bound[WALLET_BALANCE_NAME] = self._variable(
                raw_variable, inputs.get("variable"), self._name_resolver(ctx, wallet, {})
            )
        result = evaluate_condition(expression, self._name_resolver(ctx, wallet, bound))
        return ExecutorOutcome(
            output={"result": result, "branch": "true" if result else "false", "expression": expression},
            gas_estimate=self.definition.gas_estimate,
            closes_branch=not result,
        )


class LLMAgentExecutor(ActionExecutor):
    action_type = ActionType.LLM_AGENT

    def __init__(self, definition: NodeDefinition, provider: ReasoningProvider):
        super().__init__(definition)
        self.provider = provider

    @staticmethod
    def _context(raw: Any) -> Dict[str, Any]:
        if raw in (None, ""):
            return {}
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                return {"note": raw}
        if not isinstance(raw, dict):
            return {"value": raw}
        return raw

    async def execute(self, action, inputs, state, ctx):
        prompt = inputs.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ExecutorError("llm_agent requires a prompt")
        agent_id = inputs["agentId"]
        model = inputs["model"]
        snapshot = await state.snapshot()
        context = {"wallet": snapshot["wallet"], "mode": ctx.mode.value, "agentId": agent_id}
        context.update(self._context(inputs.get("context")))
        temperature = parse_amount(inputs["temperature"], "temperature")
        max_tokens = parse_amount(inputs["maxTokens"], "maxTokens")
        if max_tokens != max_tokens.to_integral_value():
            raise InvalidAmountError(f"maxTokens must be a whole number, got {inputs['maxTokens']!r}")

        timeout = ctx.settings.REASONING_TIMEOUT_SECONDS
        try:
            raw = await asyncio.wait_for(
                self.provider.complete(
                    prompt,
                    context,
                    model=model,
                    temperature=float(temperature),
                    max_tokens=int(max_tokens),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise StepTimeoutError(f"reasoning provider did not answer within {timeout}s")
        except PlaygroundError:
            raise
        except Exception as e:
            logger.warning("reasoning provider %s failed: %s", self.provider.name, e)
            raise ProviderError(f"reasoning provider failed: {e}")

        decision = parse_decision(raw)
        return ExecutorOutcome(
            output={
                "agentId": agent_id,
                "model": model,
                "decision": decision.decision,
                "reasoning": decision.reasoning,
                "confidence": decision.confidence,
                "parameters": decision.parameters,
                "raw_response": raw,
            },
            gas_estimate=self.definition.gas_estimate,
        )


# ============================================================================
# REGISTRY
# ============================================================================

class ExecutorRegistry:
    """ActionType -> executor instance. Adding an action type means adding an entry."""

    def __init__(self, executors: Iterable[ActionExecutor] = ()):
        self._executors: Dict[ActionType, ActionExecutor] = {}
        for executor in executors:
            self.register(executor)

    def register(self, executor: ActionExecutor) -> None:
        self._executors[executor.action_type] = executor

    def get(self, action_type: ActionType) -> Optional[ActionExecutor]:
        return self._executors.get(action_type)

    def __contains__(self, action_type: ActionType) -> bool:
        return action_type in self._executors


def build_default_executors(registry: NodeRegistry, provider: ReasoningProvider) -> ExecutorRegistry:
    def definition(action_type: ActionType) -> NodeDefinition:
        d = registry.get_definition(action_type)
        if d is None:
            raise ValueError(f"no node definition registered for {action_type.value}")
        return d

    return ExecutorRegistry([
        ReadBalanceExecutor(definition(ActionType.READ_BALANCE)),
        X402PaymentExecutor(definition(ActionType.X402_PAYMENT)),
        ContractCallExecutor(definition(ActionType.CONTRACT_CALL)),
        ReadStateExecutor(definition(ActionType.READ_STATE)),
        ApproveTokenExecutor(definition(ActionType.APPROVE_TOKEN)),
        ConditionExecutor(definition(ActionType.CONDITION)),
        LLMAgentExecutor(definition(ActionType.LLM_AGENT), provider),
    ])
