"""
Node Registry - static catalog of action-type definitions.

Each NodeDefinition documents one ActionType: its inputs (type, required
flag, validation rule, default), its outputs (with illustrative examples),
tags and a gas estimate. The validator checks plans against these
definitions, executors take their defaults from them, and the API serves
them to form-rendering clients.

The registry is built once at startup (``build_default_registry``) and
passed by reference; definitions are frozen and their collections are
tuples / read-only mappings.
"""

import re
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from .schemas import ActionType

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
DECIMAL_PATTERN = r"^\d+(\.\d+)?$"
ALLOWANCE_PATTERN = r"^(\d+(\.\d+)?|max)$"


class InputType(str, Enum):
    TEXT = "text"
    NUMERIC = "numeric"
    ADDRESS = "address"
    BOOLEAN = "boolean"
    STRUCTURED = "structured"


class NodeCategory(str, Enum):
    QUERY = "query"
    TRANSACTION = "transaction"
    LOGIC = "logic"


@dataclass(frozen=True)
class ValidationRule:
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    options: Tuple[str, ...] = ()
    integer: bool = False

    def matches(self, value: str) -> bool:
        return self.pattern is None or re.fullmatch(self.pattern, value) is not None


@dataclass(frozen=True)
class InputSpec:
    name: str
    type: InputType
    required: bool
    description: str
    placeholder: Optional[str] = None
    default: Any = None
    validation: Optional[ValidationRule] = None

    @property
    def has_default(self) -> bool:
        return self.default is not None


@dataclass(frozen=True)
class OutputSpec:
    name: str
    type: str
    description: str
    example: Any = None


@dataclass(frozen=True)
class NodeExample:
    title: str
    description: str
    config: Mapping[str, Any]


@dataclass(frozen=True)
class NodeDefinition:
    id: ActionType
    name: str
    category: NodeCategory
    description: str
    version: str
    inputs: Tuple[InputSpec, ...]
    outputs: Tuple[OutputSpec, ...]
    examples: Tuple[NodeExample, ...] = ()
    tags: Tuple[str, ...] = ()
    gas_estimate: Optional[str] = None

    @property
    def output_names(self) -> Tuple[str, ...]:
        return tuple(o.name for o in self.outputs)

    def apply_defaults(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``values`` with declared defaults filled in for missing optional inputs."""
        merged = dict(values)
        for spec in self.inputs:
            if merged.get(spec.name) in (None, "") and spec.has_default:
                default = spec.default
                merged[spec.name] = list(default) if isinstance(default, tuple) else default
        return merged

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view for API consumers."""
        def _rule(rule: Optional[ValidationRule]) -> Optional[Dict[str, Any]]:
            if rule is None:
                return None
            data = {"pattern": rule.pattern, "min": rule.min, "max": rule.max, "options": list(rule.options),
                    "integer": rule.integer or None}
            return {k: v for k, v in data.items() if v not in (None, [])}

        return {
            "id": self.id.value,
            "name": self.name,
            "category": self.category.value,
            "description": self.description,
            "version": self.version,
            "inputs": [
                {
                    "name": i.name,
                    "type": i.type.value,
                    "required": i.required,
                    "description": i.description,
                    "placeholder": i.placeholder,
                    "default": list(i.default) if isinstance(i.default, tuple) else i.default,
                    "validation": _rule(i.validation),
                }
                for i in self.inputs
            ],
            "outputs": [
                {"name": o.name, "type": o.type, "description": o.description, "example": o.example}
                for o in self.outputs
            ],
            "examples": [
                {"title": e.title, "description": e.description, "config": dict(e.config)}
                for e in self.examples
            ],
            "tags": list(self.tags),
            "gasEstimate": self.gas_estimate,
        }


class NodeRegistry:
    """Read-only lookup of NodeDefinitions by ActionType."""

    def __init__(self, definitions: Iterable[NodeDefinition]):
        self._definitions: Mapping[ActionType, NodeDefinition] = MappingProxyType(
            {d.id: d for d in definitions}
        )

    def get_definition(self, action_type: Union[ActionType, str]) -> Optional[NodeDefinition]:
        if not isinstance(action_type, ActionType):
            try:
                action_type = ActionType(action_type)
            except ValueError:
                return None
        return self._definitions.get(action_type)

    def __contains__(self, action_type: Union[ActionType, str]) -> bool:
        return self.get_definition(action_type) is not None

    def __len__(self) -> int:
        return len(self._definitions)

    def definitions(self) -> Tuple[NodeDefinition, ...]:
        return tuple(self._definitions.values())

    def by_category(self, category: Union[NodeCategory, str]) -> Tuple[NodeDefinition, ...]:
        category = NodeCategory(category)
        return tuple(d for d in self._definitions.values() if d.category == category)


# ============================================================================
# DEFAULT CATALOG
# ============================================================================

def _address_rule() -> ValidationRule:
    return ValidationRule(pattern=ADDRESS_PATTERN)


READ_BALANCE = NodeDefinition(
    id=ActionType.READ_BALANCE,
    name="Read Balance",
    category=NodeCategory.QUERY,
    description="Reads a token balance, of the active wallet unless another address is given",
    version="1.1.0",
    inputs=(
        InputSpec("token", InputType.TEXT, False, "Token symbol to read", placeholder="TCRO", default="TCRO"),
        InputSpec("address", InputType.ADDRESS, False, "Address to read; defaults to the active wallet",
                  placeholder="0x36aE091C6264Cb30b2353806EEf2F969Dc2893f8", validation=_address_rule()),
    ),
    outputs=(
        OutputSpec("token", "string", "Token symbol that was read", "TCRO"),
        OutputSpec("balance", "string", "Balance in human-readable units", "100.5"),
        OutputSpec("address", "address", "Address the balance belongs to", "0x36aE091C6264Cb30b2353806EEf2F969Dc2893f8"),
    ),
    examples=(
        NodeExample("Check TCRO Balance", "Read the native balance of the active wallet", MappingProxyType({})),
        NodeExample("Check USDC Balance", "Read the USDC balance", MappingProxyType({"token": "USDC"})),
        NodeExample("Check Recipient Balance", "Read the balance of another address",
                    MappingProxyType({"address": "0xB3fdA213Ad32798724aA7aF685a8DD46f3cbd7f7"})),
    ),
    tags=("query", "balance", "read", "wallet"),
    gas_estimate="0",
)

X402_PAYMENT = NodeDefinition(
    id=ActionType.X402_PAYMENT,
    name="x402 Payment",
    category=NodeCategory.TRANSACTION,
    description="Transfers an amount of a token to a recipient using the x402 protocol",
    version="1.0.0",
    inputs=(
        InputSpec("to", InputType.ADDRESS, True, "Recipient wallet address",
                  placeholder="0x1234...5678", validation=_address_rule()),
        InputSpec("amount", InputType.NUMERIC, True, "Amount to send in token units",
                  placeholder="10.5", validation=ValidationRule(pattern=DECIMAL_PATTERN, min=0)),
        InputSpec("token", InputType.TEXT, False, "Token symbol", placeholder="TCRO", default="TCRO"),
        InputSpec("metadata", InputType.STRUCTURED, False, "Metadata to embed with the payment",
                  placeholder='{"purpose": "payment"}'),
    ),
    outputs=(
        OutputSpec("from", "address", "Paying wallet", "0x36aE091C6264Cb30b2353806EEf2F969Dc2893f8"),
        OutputSpec("to", "address", "Recipient wallet", "0xB3fdA213Ad32798724aA7aF685a8DD46f3cbd7f7"),
        OutputSpec("amount", "string", "Amount transferred", "5"),
        OutputSpec("token", "string", "Token transferred", "TCRO"),
        OutputSpec("newBalance", "string", "Payer balance after the transfer", "95"),
        OutputSpec("txHash", "string", "Transaction hash (execute mode)", "0xabc123..."),
        OutputSpec("status", "string", "Transfer status", "confirmed"),
    ),
    examples=(
        NodeExample("Simple Payment", "Send 10 TCRO",
                    MappingProxyType({"to": "0xB3fdA213Ad32798724aA7aF685a8DD46f3cbd7f7", "amount": "10"})),
    ),
    tags=("payment", "transaction", "x402"),
    gas_estimate="210000",
)

CONTRACT_CALL = NodeDefinition(
    id=ActionType.CONTRACT_CALL,
    name="Contract Call",
    category=NodeCategory.TRANSACTION,
    description="Invokes a named method on a registered contract",
    version="1.0.0",
    inputs=(
        InputSpec("contract", InputType.TEXT, True, "Registered contract name", placeholder="ExecutionRouter"),
        InputSpec("method", InputType.TEXT, True, "Method to invoke", placeholder="executePayment"),
        InputSpec("args", InputType.STRUCTURED, False, "Method arguments as a JSON array",
                  placeholder='["0x123...", "1"]', default=()),
        InputSpec("value", InputType.NUMERIC, False, "Native value sent with the call",
                  placeholder="0", default="0", validation=ValidationRule(pattern=DECIMAL_PATTERN, min=0)),
    ),
    outputs=(
        OutputSpec("contract", "string", "Contract name", "ExecutionRouter"),
        OutputSpec("address", "address", "Contract address", "0x0B10060fF00CF2913a81f5BdBEA1378eD10092c6"),
        OutputSpec("method", "string", "Invoked method", "executePayment"),
        OutputSpec("args", "json", "Arguments passed", []),
        OutputSpec("value", "string", "Native value sent", "0"),
        OutputSpec("result", "object", "Return value (placeholder when simulated)", {"simulated": True}),
        OutputSpec("success", "boolean", "Whether the call succeeded", True),
        OutputSpec("txHash", "string", "Transaction hash (execute mode)", "0xdef456..."),
    ),
    examples=(
        NodeExample("Router Payment", "Pay through the execution router",
                    MappingProxyType({"contract": "ExecutionRouter", "method": "executePayment"})),
    ),
    tags=("contract", "transaction", "call"),
    gas_estimate="100000",
)

READ_STATE = NodeDefinition(
    id=ActionType.READ_STATE,
    name="Read State",
    category=NodeCategory.QUERY,
    description="Reads a registered contract's address and deployment status",
    version="1.0.0",
    inputs=(
        InputSpec("contract", InputType.TEXT, True, "Registered contract name", placeholder="TreasuryVault"),
    ),
    outputs=(
        OutputSpec("contract", "string", "Contract name", "TreasuryVault"),
        OutputSpec("address", "address", "Contract address", "0x169439e816B63D3836e1E4e9C407c7936505C202"),
        OutputSpec("deployed", "boolean", "Whether the contract is deployed", True),
        OutputSpec("status", "string", "Contract status", "deployed"),
    ),
    tags=("query", "state", "contract"),
    gas_estimate="0",
)

APPROVE_TOKEN = NodeDefinition(
    id=ActionType.APPROVE_TOKEN,
    name="Approve Token",
    category=NodeCategory.TRANSACTION,
    description="Sets a spending allowance for a spender",
    version="1.0.0",
    inputs=(
        InputSpec("spender", InputType.ADDRESS, True, "Address granted the allowance",
                  placeholder="0x...SPENDER_ADDRESS", validation=_address_rule()),
        InputSpec("amount", InputType.TEXT, True, "Allowance amount, or 'max' for unlimited",
                  placeholder="1000 or max", validation=ValidationRule(pattern=ALLOWANCE_PATTERN)),
        InputSpec("token", InputType.TEXT, False, "Token symbol", placeholder="USDC", default="USDC"),
    ),
    outputs=(
        OutputSpec("token", "string", "Token approved", "USDC"),
        OutputSpec("spender", "address", "Spender address", "0x145677FC4d9b8F19B5D56d1820c48e0443049a30"),
        OutputSpec("amount", "string", "Requested allowance", "100"),
        OutputSpec("allowance", "string", "Allowance now in effect", "100"),
        OutputSpec("approved", "boolean", "Whether the approval took effect", True),
        OutputSpec("txHash", "string", "Approval transaction hash (execute mode)", "0xghi789..."),
    ),
    tags=("token", "approval", "permission"),
    gas_estimate="50000",
)

CONDITION = NodeDefinition(
    id=ActionType.CONDITION,
    name="Condition",
    category=NodeCategory.LOGIC,
    description="Evaluates a boolean expression; a false result skips every later step",
    version="1.0.0",
    inputs=(
        InputSpec("condition", InputType.TEXT, True, "Expression to evaluate", placeholder="step_0.balance > 10"),
        InputSpec("variable", InputType.TEXT, False,
                  "Value bound to the name 'balance' in the expression (a step reference or wallet balance name)",
                  placeholder="step_0.balance"),
    ),
    outputs=(
        OutputSpec("result", "boolean", "Evaluation result", True),
        OutputSpec("branch", "string", "Branch taken", "true"),
        OutputSpec("expression", "string", "Expression that was evaluated", "step_0.balance > 10"),
    ),
    examples=(
        NodeExample("Balance Check", "Continue only with enough funds",
                    MappingProxyType({"condition": "step_0.balance >= 100"})),
        NodeExample("Agent Decision", "Continue only if the agent approved",
                    MappingProxyType({"condition": "step_1.decision == 'execute'"})),
        NodeExample("Wallet Gate", "Continue only while the wallet holds more than 1 TCRO",
                    MappingProxyType({"condition": "balance > 1"})),
    ),
    tags=("logic", "condition", "control-flow"),
    gas_estimate="0",
)

LLM_AGENT = NodeDefinition(
    id=ActionType.LLM_AGENT,
    name="AI Agent",
    category=NodeCategory.LOGIC,
    description="Sends a prompt and resolved context to a reasoning provider and parses its decision",
    version="2.0.0",
    inputs=(
        InputSpec("prompt", InputType.TEXT, True, "Instruction for the agent",
                  placeholder="Decide if we should execute the payment"),
        InputSpec("agentId", InputType.TEXT, False, "Agent profile", placeholder="risk-analyzer",
                  default="risk-analyzer",
                  validation=ValidationRule(options=("risk-analyzer", "defi-agent", "payment-agent"))),
        InputSpec("context", InputType.STRUCTURED, False, "Additional context; values may reference earlier steps",
                  placeholder='{"balance": "step_0.balance"}'),
        InputSpec("model", InputType.TEXT, False, "Model name", placeholder="gpt-4", default="gpt-4"),
        InputSpec("temperature", InputType.NUMERIC, False, "Sampling temperature", placeholder="0.7",
                  default=0.7, validation=ValidationRule(min=0, max=1)),
        InputSpec("maxTokens", InputType.NUMERIC, False, "Maximum response length", placeholder="500",
                  default=500, validation=ValidationRule(min=1, max=4000, integer=True)),
    ),
    outputs=(
        OutputSpec("agentId", "string", "Agent profile used", "risk-analyzer"),
        OutputSpec("model", "string", "Model used", "gpt-4"),
        OutputSpec("decision", "string", "Agent decision", "execute"),
        OutputSpec("reasoning", "string", "Explanation of the decision", "Balance above threshold"),
        OutputSpec("confidence", "number", "Confidence score (0-1)", 0.95),
        OutputSpec("parameters", "json", "Parameters suggested for later steps", {"amount": "2.5"}),
        OutputSpec("raw_response", "string", "Unparsed provider response", "{...}"),
    ),
    examples=(
        NodeExample("Risk Analysis", "Evaluate a payment before sending it",
                    MappingProxyType({"prompt": "Is it safe to send 2 TCRO?",
                                      "context": {"balance": "step_0.balance"}})),
    ),
    tags=("ai", "llm", "agent", "decision"),
    gas_estimate="0",
)


def build_default_registry() -> NodeRegistry:
    return NodeRegistry(
        [READ_BALANCE, X402_PAYMENT, CONTRACT_CALL, READ_STATE, APPROVE_TOKEN, CONDITION, LLM_AGENT]
    )
