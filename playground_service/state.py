"""
State adapters.

Executors read and mutate ledger-like state through a ``StateAdapter``:

- ``VirtualStateStore``: in-memory wallet/contracts/allowances used by
  simulate-mode runs. Arithmetic is Decimal; balances are kept and reported
  as decimal strings ("99.5", never "99.50000").
- ``LiveStateAdapter``: delegates to a ``LedgerClient`` for execute-mode
  runs; mutations submit, await confirmation and report tx hash + gas used.

Each run gets its own adapter instance; adapters are never shared.
"""

import copy
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from .config import Settings, get_settings
from .errors import InsufficientBalanceError, InvalidAmountError, LedgerError, UnknownContractError
from .ledger import LedgerClient

logger = logging.getLogger(__name__)

NATIVE_TOKEN = "TCRO"
MAX_ALLOWANCE = "max"

GAS_PAYMENT = "210000"
GAS_APPROVAL = "50000"
GAS_CONTRACT_CALL = "100000"
GAS_EXECUTE_CALL = "250000"

# Common DeFi contracts available to every simulated run
SIMULATED_CONTRACTS = {
    "SwapRouter": "0x145677FC4d9b8F19B5D56d1820c48e0443049a30",
    "LiquidityPool": "0x7c3c0c8f6f7e7d8c9b8b7b7c6c5c4c3c2c1c0c9c",
    "PriceOracle": "0x6c3c0c8f6f7e7d8c9b8b7b7c6c5c4c3c2c1c0c8c",
}


def format_amount(value: Decimal) -> str:
    """Canonical decimal string: no exponent, no trailing zeros."""
    if value == 0:
        return "0"
    text = format(value.normalize(), "f")
    return text


def parse_amount(value: Any, name: str = "amount") -> Decimal:
    if isinstance(value, bool):
        raise InvalidAmountError(f"{name} must be numeric, got {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"{name} must be numeric, got {value!r}")
    if not amount.is_finite():
        raise InvalidAmountError(f"{name} must be finite, got {value!r}")
    return amount


def contract_call_gas(method: str) -> str:
    if method in ("execute", "executePayment"):
        return GAS_EXECUTE_CALL
    if method.startswith("approve"):
        return GAS_APPROVAL
    return GAS_CONTRACT_CALL


@dataclass
class ContractInfo:
    name: str
    address: str
    deployed: bool = True
    status: str = "deployed"

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "deployed": self.deployed, "status": self.status}


@dataclass(frozen=True)
class LedgerReceipt:
    """Outcome of a state mutation. Virtual receipts carry no tx hash."""
    status: str
    tx_hash: Optional[str] = None
    gas_used: Optional[str] = None
    gas_estimate: Optional[str] = None
    new_balance: Optional[str] = None
    allowance: Optional[str] = None
    result: Any = None


class StateAdapter:
    """Interface shared by virtual and live state. Only executors call mutators."""
    is_live: bool = False

    @property
    def wallet_address(self) -> str:
        raise NotImplementedError

    async def balance_of(self, token: str) -> str:
        raise NotImplementedError

    async def has_token(self, token: str) -> bool:
        raise NotImplementedError

    async def balance_at(self, address: str, token: str) -> Optional[str]:
        """Balance of ``token`` held by any ``address``; None when there is no record of it."""
        raise NotImplementedError

    async def contract_of(self, name: str) -> Optional[ContractInfo]:
        raise NotImplementedError

    async def counters(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def transfer(self, token: str, amount: Decimal, to: str,
                       metadata: Optional[Dict[str, Any]] = None) -> LedgerReceipt:
        raise NotImplementedError

    async def approve(self, token: str, spender: str, amount: str) -> LedgerReceipt:
        raise NotImplementedError

    async def call_contract(self, name: str, method: str, args: List[Any], value: Decimal) -> LedgerReceipt:
        raise NotImplementedError

    async def snapshot(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def unified_state(self) -> Dict[str, Any]:
        """Read-only projection for agents and UI panels."""
        snap = await self.snapshot()
        counters = snap.get("counters", {})
        return {
            "wallet": {
                "address": snap["wallet"]["address"],
                "balances": [
                    {"token": token, "balance": balance, "symbol": token}
                    for token, balance in snap["wallet"]["balances"].items()
                ],
            },
            "contracts": [
                {"name": name, "address": info["address"], "status": info["status"]}
                for name, info in snap["contracts"].items()
            ],
            "protocol": {
                "executions": counters.get("execution_count", 0),
                "last_execution": counters.get("last_execution_time"),
            },
        }


# ============================================================================
# VIRTUAL STATE
# ============================================================================

class VirtualStateStore(StateAdapter):
    """In-memory ledger for simulate mode. Deterministic for a given seed."""
    is_live = False

    def __init__(
        self,
        wallet_address: str,
        balances: Optional[Dict[str, Any]] = None,
        contracts: Optional[Dict[str, ContractInfo]] = None,
    ):
        self._wallet_address = wallet_address
        self.balances: Dict[str, Decimal] = {
            token: parse_amount(value, f"balance of {token}") for token, value in (balances or {}).items()
        }
        self.contracts: Dict[str, ContractInfo] = dict(contracts or {})
        self.allowances: Dict[str, Dict[str, str]] = {}
        # Amounts received by other addresses during this run, keyed by lowercased address
        self.credits: Dict[str, Dict[str, Decimal]] = {}
        self._counters: Dict[str, Any] = {
            "execution_count": 0,
            "last_execution_time": None,
            "last_tx_hash": None,
        }

    @staticmethod
    def default_contracts(settings: Settings) -> Dict[str, ContractInfo]:
        contracts = {
            "ExecutionRouter": ContractInfo("ExecutionRouter", settings.EXECUTION_ROUTER_ADDRESS),
            "TreasuryVault": ContractInfo("TreasuryVault", settings.TREASURY_VAULT_ADDRESS),
            "AttestationRegistry": ContractInfo("AttestationRegistry", settings.ATTESTATION_REGISTRY_ADDRESS),
        }
        for name, address in SIMULATED_CONTRACTS.items():
            contracts[name] = ContractInfo(name, address)
        return contracts

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, seed: Optional[Any] = None) -> "VirtualStateStore":
        """Build a store from configured defaults, overridden by an optional StateSeed."""
        settings = settings or get_settings()
        balances: Dict[str, Any] = dict(settings.DEFAULT_BALANCES)
        contracts = cls.default_contracts(settings)
        address = settings.WALLET_ADDRESS
        if seed is not None:
            address = seed.wallet_address or address
            balances.update(seed.balances or {})
            if seed.contracts is not None:
                contracts = {
                    name: ContractInfo(
                        name,
                        info.get("address", ""),
                        bool(info.get("deployed", True)),
                        info.get("status") or "deployed",
                    )
                    for name, info in seed.contracts.items()
                }
        return cls(address, balances, contracts)

    @classmethod
    async def from_ledger(
        cls,
        ledger: LedgerClient,
        wallet_address: str,
        tokens: List[str],
        contract_names: List[str],
    ) -> "VirtualStateStore":
        """Seed virtual state from a snapshot of live state."""
        balances: Dict[str, Any] = {}
        for token in tokens:
            balance = await ledger.get_balance(wallet_address, token)
            if balance is not None:
                balances[token] = balance
        contracts: Dict[str, ContractInfo] = {}
        for name in contract_names:
            info = await ledger.get_contract(name)
            if info is not None:
                contracts[name] = ContractInfo(name, info["address"], info["deployed"], info["status"])
        return cls(wallet_address, balances, contracts)

    @property
    def wallet_address(self) -> str:
        return self._wallet_address

    async def balance_of(self, token: str) -> str:
        return format_amount(self.balances.get(token, Decimal(0)))

    async def has_token(self, token: str) -> bool:
        return token in self.balances

    async def balance_at(self, address: str, token: str) -> Optional[str]:
        if address.lower() == self._wallet_address.lower():
            return await self.balance_of(token) if token in self.balances else None
        received = self.credits.get(address.lower(), {})
        return format_amount(received[token]) if token in received else None

    async def contract_of(self, name: str) -> Optional[ContractInfo]:
        return self.contracts.get(name)

    async def counters(self) -> Dict[str, Any]:
        return dict(self._counters)

    def _record_execution(self) -> None:
        self._counters["execution_count"] += 1
        self._counters["last_execution_time"] = int(time.time() * 1000)

    def _debit(self, token: str, amount: Decimal) -> Decimal:
        current = self.balances.get(token, Decimal(0))
        if current < amount:
            raise InsufficientBalanceError(
                f"insufficient {token} balance: have {format_amount(current)}, need {format_amount(amount)}"
            )
        self.balances[token] = current - amount
        return self.balances[token]

    async def transfer(self, token, amount, to, metadata=None) -> LedgerReceipt:
        remaining = self._debit(token, amount)
        if to.lower() == self._wallet_address.lower():
            remaining = self.balances[token] = remaining + amount
        else:
            received = self.credits.setdefault(to.lower(), {})
            received[token] = received.get(token, Decimal(0)) + amount
        self._record_execution()
        logger.debug("virtual transfer %s %s -> %s", format_amount(amount), token, to)
        return LedgerReceipt(status="simulated", gas_estimate=GAS_PAYMENT, new_balance=format_amount(remaining))

    async def approve(self, token, spender, amount) -> LedgerReceipt:
        allowance = MAX_ALLOWANCE if str(amount).lower() == MAX_ALLOWANCE else format_amount(parse_amount(amount))
        self.allowances.setdefault(token, {})[spender] = allowance
        self._record_execution()
        return LedgerReceipt(status="simulated", gas_estimate=GAS_APPROVAL, allowance=allowance)

    async def call_contract(self, name, method, args, value) -> LedgerReceipt:
        contract = self.contracts.get(name)
        if contract is None:
            raise UnknownContractError(f"unknown contract '{name}'")
        if value > 0:
            self._debit(NATIVE_TOKEN, value)
        self._record_execution()
        return LedgerReceipt(
            status="simulated",
            gas_estimate=contract_call_gas(method),
            result={"simulated": True, "method": method},
        )

    async def snapshot(self) -> Dict[str, Any]:
        return {
            "wallet": {
                "address": self._wallet_address,
                "balances": {token: format_amount(v) for token, v in self.balances.items()},
            },
            "contracts": {name: c.to_dict() for name, c in self.contracts.items()},
            "allowances": copy.deepcopy(self.allowances),
            "counters": dict(self._counters),
        }


# ============================================================================
# LIVE STATE
# ============================================================================

@dataclass
class LiveStateAdapter(StateAdapter):
    """Execute-mode adapter backed by a LedgerClient."""
    ledger: LedgerClient
    address: str
    confirmation_timeout: float = 60.0
    tracked_tokens: List[str] = field(default_factory=lambda: ["TCRO", "USDC"])
    tracked_contracts: List[str] = field(default_factory=list)
    _counters: Dict[str, Any] = field(default_factory=lambda: {
        "execution_count": 0, "last_execution_time": None, "last_tx_hash": None,
    })
    is_live = True

    @property
    def wallet_address(self) -> str:
        return self.address

    async def balance_of(self, token: str) -> str:
        balance = await self.ledger.get_balance(self.address, token)
        return "0" if balance is None else format_amount(parse_amount(balance, f"balance of {token}"))

    async def has_token(self, token: str) -> bool:
        return await self.ledger.get_balance(self.address, token) is not None

    async def balance_at(self, address: str, token: str) -> Optional[str]:
        balance = await self.ledger.get_balance(address, token)
        return None if balance is None else format_amount(parse_amount(balance, f"balance of {token}"))

    async def contract_of(self, name: str) -> Optional[ContractInfo]:
        info = await self.ledger.get_contract(name)
        if info is None:
            return None
        return ContractInfo(name, info["address"], info["deployed"], info["status"])

    async def counters(self) -> Dict[str, Any]:
        return dict(self._counters)

    async def _confirm(self, tx_hash: str):
        confirmation = await self.ledger.wait_for_confirmation(tx_hash, self.confirmation_timeout)
        if not confirmation.succeeded:
            raise LedgerError(f"transaction {tx_hash} {confirmation.status}")
        self._counters["execution_count"] += 1
        self._counters["last_execution_time"] = int(time.time() * 1000)
        self._counters["last_tx_hash"] = tx_hash
        return confirmation

    async def transfer(self, token, amount, to, metadata=None) -> LedgerReceipt:
        current = parse_amount(await self.balance_of(token))
        if current < amount:
            raise InsufficientBalanceError(
                f"insufficient {token} balance: have {format_amount(current)}, need {format_amount(amount)}"
            )
        tx_hash = await self.ledger.submit_payment(self.address, to, token, format_amount(amount), metadata)
        confirmation = await self._confirm(tx_hash)
        return LedgerReceipt(
            status="confirmed",
            tx_hash=tx_hash,
            gas_used=confirmation.gas_used,
            gas_estimate=GAS_PAYMENT,
            new_balance=await self.balance_of(token),
        )

    async def approve(self, token, spender, amount) -> LedgerReceipt:
        allowance = MAX_ALLOWANCE if str(amount).lower() == MAX_ALLOWANCE else format_amount(parse_amount(amount))
        tx_hash = await self.ledger.submit_approval(self.address, token, spender, allowance)
        confirmation = await self._confirm(tx_hash)
        return LedgerReceipt(
            status="confirmed",
            tx_hash=tx_hash,
            gas_used=confirmation.gas_used,
            gas_estimate=GAS_APPROVAL,
            allowance=allowance,
        )

    async def call_contract(self, name, method, args, value) -> LedgerReceipt:
        if await self.contract_of(name) is None:
            raise UnknownContractError(f"unknown contract '{name}'")
        tx_hash = await self.ledger.submit_contract_call(self.address, name, method, list(args), format_amount(value))
        confirmation = await self._confirm(tx_hash)
        return LedgerReceipt(
            status="confirmed",
            tx_hash=tx_hash,
            gas_used=confirmation.gas_used,
            gas_estimate=contract_call_gas(method),
            result=confirmation.result,
        )

    async def snapshot(self) -> Dict[str, Any]:
        balances = {}
        for token in self.tracked_tokens:
            balance = await self.ledger.get_balance(self.address, token)
            if balance is not None:
                balances[token] = format_amount(parse_amount(balance, f"balance of {token}"))
        contracts = {}
        for name in self.tracked_contracts:
            info = await self.contract_of(name)
            if info is not None:
                contracts[name] = info.to_dict()
        return {
            "wallet": {"address": self.address, "balances": balances},
            "contracts": contracts,
            "allowances": {},
            "counters": dict(self._counters),
        }
