import asyncio
import itertools
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from playground_service.config import Settings
from playground_service.engine import ExecutionEngine
from playground_service.executors import build_default_executors
from playground_service.ledger import LedgerClient, LedgerConfirmation
from playground_service.node_registry import build_default_registry
from playground_service.reasoning import OfflineReasoningProvider, ReasoningProvider

WALLET = "0x36aE091C6264Cb30b2353806EEf2F969Dc2893f8"
RECIPIENT = "0xB3fdA213Ad32798724aA7aF685a8DD46f3cbd7f7"
SPENDER = "0x145677FC4d9b8F19B5D56d1820c48e0443049a30"


class FakeLedger(LedgerClient):
    """In-memory ledger that confirms every submission."""

    def __init__(self, balances: Optional[Dict[str, str]] = None, fail_status: Optional[str] = None):
        self.balances = dict(balances or {"TCRO": "50", "USDC": "1000"})
        self.contracts = {
            "ExecutionRouter": {"address": "0x0B10060fF00CF2913a81f5BdBEA1378eD10092c6",
                                "deployed": True, "status": "deployed"},
        }
        self.fail_status = fail_status
        self.submissions: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    def _tx(self) -> str:
        return "0x" + f"{next(self._ids):064x}"

    async def get_balance(self, address, token):
        return self.balances.get(token)

    async def get_contract(self, name):
        return self.contracts.get(name)

    async def submit_payment(self, sender, to, token, amount, metadata=None):
        self.submissions.append({"kind": "payment", "to": to, "token": token, "amount": amount})
        self.balances[token] = str(Decimal(self.balances[token]) - Decimal(amount))
        return self._tx()

    async def submit_approval(self, owner, token, spender, amount):
        self.submissions.append({"kind": "approval", "token": token, "spender": spender, "amount": amount})
        return self._tx()

    async def submit_contract_call(self, caller, contract, method, args, value):
        self.submissions.append({"kind": "call", "contract": contract, "method": method})
        return self._tx()

    async def wait_for_confirmation(self, tx_hash, timeout):
        return LedgerConfirmation(tx_hash=tx_hash, status=self.fail_status or "confirmed",
                                  gas_used="21000", result={"ok": True})


class FakeProvider(ReasoningProvider):
    name = "fake"

    def __init__(self, response: Optional[str] = None, error: Optional[Exception] = None, delay: float = 0):
        self.response = response or (
            '{"decision": "execute", "reasoning": "balance is healthy", '
            '"confidence": 0.9, "parameters": {"amount": "2"}}'
        )
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, prompt, context, **options):
        self.calls.append({"prompt": prompt, "context": context, "options": options})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        WALLET_ADDRESS=WALLET,
        DEFAULT_BALANCES={"TCRO": "10", "USDC": "1000"},
        STEP_TIMEOUT_SECONDS=2.0,
        REASONING_TIMEOUT_SECONDS=1.0,
        REASONING_PROVIDER="offline",
        RATE_LIMIT="1000/minute",
        SENTRY_DSN=None,
    )


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def make_engine(registry, settings):
    def _make(provider: Optional[ReasoningProvider] = None, ledger: Optional[LedgerClient] = None,
              settings_override: Optional[Settings] = None) -> ExecutionEngine:
        executors = build_default_executors(registry, provider or OfflineReasoningProvider())
        return ExecutionEngine(registry, executors, settings=settings_override or settings, ledger=ledger)
    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture
def make_ledger():
    return FakeLedger
