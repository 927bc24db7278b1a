from decimal import Decimal

import pytest

from playground_service.errors import InsufficientBalanceError, LedgerError, UnknownContractError
from playground_service.schemas import StateSeed
from playground_service.state import (
    LiveStateAdapter,
    VirtualStateStore,
    contract_call_gas,
    format_amount,
)

RECIPIENT = "0xB3fdA213Ad32798724aA7aF685a8DD46f3cbd7f7"
SPENDER = "0x145677FC4d9b8F19B5D56d1820c48e0443049a30"


def test_format_amount_is_canonical():
    assert format_amount(Decimal("100") - Decimal("0.5")) == "99.5"
    assert format_amount(Decimal("100.000")) == "100"
    assert format_amount(Decimal("0.00")) == "0"
    assert format_amount(Decimal("1E+3")) == "1000"


def test_contract_call_gas_estimates():
    assert contract_call_gas("executePayment") == "250000"
    assert contract_call_gas("execute") == "250000"
    assert contract_call_gas("approveSpender") == "50000"
    assert contract_call_gas("deposit") == "100000"


@pytest.mark.asyncio
async def test_seeded_from_settings_defaults(settings):
    store = VirtualStateStore.from_settings(settings)
    assert await store.balance_of("TCRO") == "10"
    assert await store.balance_of("USDC") == "1000"
    assert (await store.contract_of("ExecutionRouter")).address == settings.EXECUTION_ROUTER_ADDRESS
    assert (await store.contract_of("SwapRouter")) is not None


@pytest.mark.asyncio
async def test_seed_overrides_balances(settings):
    store = VirtualStateStore.from_settings(settings, StateSeed(balances={"TCRO": "100"}))
    assert await store.balance_of("TCRO") == "100"
    assert await store.balance_of("USDC") == "1000"


@pytest.mark.asyncio
async def test_transfer_uses_decimal_arithmetic(settings):
    store = VirtualStateStore.from_settings(settings, StateSeed(balances={"TCRO": "100"}))
    receipt = await store.transfer("TCRO", Decimal("0.5"), RECIPIENT)
    assert receipt.new_balance == "99.5"
    assert receipt.tx_hash is None
    assert receipt.gas_estimate == "210000"
    assert (await store.counters())["execution_count"] == 1


@pytest.mark.asyncio
async def test_transfer_rejects_insufficient_balance(settings):
    store = VirtualStateStore.from_settings(settings)
    with pytest.raises(InsufficientBalanceError):
        await store.transfer("TCRO", Decimal("10.01"), RECIPIENT)
    assert await store.balance_of("TCRO") == "10"


@pytest.mark.asyncio
async def test_approve_records_allowance(settings):
    store = VirtualStateStore.from_settings(settings)
    receipt = await store.approve("USDC", SPENDER, "max")
    assert receipt.allowance == "max"
    snap = await store.snapshot()
    assert snap["allowances"] == {"USDC": {SPENDER: "max"}}


@pytest.mark.asyncio
async def test_call_unknown_contract(settings):
    store = VirtualStateStore.from_settings(settings)
    with pytest.raises(UnknownContractError):
        await store.call_contract("Nope", "run", [], Decimal(0))


@pytest.mark.asyncio
async def test_unified_state_projection(settings):
    store = VirtualStateStore.from_settings(settings)
    unified = await store.unified_state()
    assert unified["wallet"]["address"] == settings.WALLET_ADDRESS
    assert {"token": "TCRO", "balance": "10", "symbol": "TCRO"} in unified["wallet"]["balances"]
    names = [c["name"] for c in unified["contracts"]]
    assert "TreasuryVault" in names
    assert unified["protocol"] == {"executions": 0, "last_execution": None}


@pytest.mark.asyncio
async def test_snapshot_is_detached(settings):
    store = VirtualStateStore.from_settings(settings)
    snap = await store.snapshot()
    snap["wallet"]["balances"]["TCRO"] = "999"
    assert await store.balance_of("TCRO") == "10"


@pytest.mark.asyncio
async def test_from_ledger_copies_live_state(make_ledger):
    ledger = make_ledger(balances={"TCRO": "42.5"})
    store = await VirtualStateStore.from_ledger(ledger, "0xabc", ["TCRO", "USDC"], ["ExecutionRouter", "Ghost"])
    assert await store.balance_of("TCRO") == "42.5"
    assert not await store.has_token("USDC")
    assert await store.contract_of("Ghost") is None
    assert (await store.contract_of("ExecutionRouter")).deployed is True


@pytest.mark.asyncio
async def test_live_transfer_submits_and_confirms(make_ledger):
    ledger = make_ledger()
    live = LiveStateAdapter(ledger=ledger, address="0x36aE091C6264Cb30b2353806EEf2F969Dc2893f8")
    receipt = await live.transfer("TCRO", Decimal("5"), RECIPIENT)
    assert receipt.status == "confirmed"
    assert receipt.tx_hash.startswith("0x")
    assert receipt.gas_used == "21000"
    assert receipt.new_balance == "45"
    assert ledger.submissions[0]["amount"] == "5"
    assert (await live.counters())["last_tx_hash"] == receipt.tx_hash


@pytest.mark.asyncio
async def test_live_failed_confirmation_raises(make_ledger):
    live = LiveStateAdapter(ledger=make_ledger(fail_status="failed"), address="0xabc")
    with pytest.raises(LedgerError):
        await live.approve("USDC", SPENDER, "10")


@pytest.mark.asyncio
async def test_live_insufficient_balance_never_submits(make_ledger):
    ledger = make_ledger(balances={"TCRO": "1"})
    live = LiveStateAdapter(ledger=ledger, address="0xabc")
    with pytest.raises(InsufficientBalanceError):
        await live.transfer("TCRO", Decimal("2"), RECIPIENT)
    assert ledger.submissions == []
