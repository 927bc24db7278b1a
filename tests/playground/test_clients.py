import json

import httpx
import pytest

from playground_service.config import Settings
from playground_service.errors import LedgerError, MalformedResponseError, ProviderError, StepTimeoutError
from playground_service.ledger import HttpLedgerClient
from playground_service.reasoning import (
    OfflineReasoningProvider,
    OpenAIReasoningProvider,
    build_reasoning_provider,
    parse_decision,
)

GATEWAY = "http://ledger.test/api/ledger"


def ledger_with(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=GATEWAY)
    return HttpLedgerClient(GATEWAY, client=client, **kwargs)


@pytest.mark.asyncio
async def test_balance_lookup_and_unknown_token():
    def handler(request):
        if request.url.params["token"] == "TCRO":
            return httpx.Response(200, json={"token": "TCRO", "balance": "12.5"})
        return httpx.Response(404, json={"error": "unknown token"})

    ledger = ledger_with(handler)
    assert await ledger.get_balance("0xabc", "TCRO") == "12.5"
    assert await ledger.get_balance("0xabc", "DOGE") is None
    await ledger.aclose()


@pytest.mark.asyncio
async def test_contract_lookup():
    def handler(request):
        assert request.url.path.endswith("/contracts/ExecutionRouter")
        return httpx.Response(200, json={"name": "ExecutionRouter", "address": "0x0B1", "deployed": True})

    info = await ledger_with(handler).get_contract("ExecutionRouter")
    assert info == {"address": "0x0B1", "deployed": True, "status": "deployed"}


@pytest.mark.asyncio
async def test_payment_submission_and_confirmation():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path))
        if request.method == "POST":
            body = json.loads(request.content)
            assert body["amount"] == "1.5"
            return httpx.Response(200, json={"txHash": "0xfeed"})
        if len(seen) < 3:
            return httpx.Response(200, json={"status": "pending"})
        return httpx.Response(200, json={"status": "confirmed", "gasUsed": 21000})

    ledger = ledger_with(handler, poll_interval=0)
    tx_hash = await ledger.submit_payment("0xabc", "0xdef", "TCRO", "1.5")
    confirmation = await ledger.wait_for_confirmation(tx_hash, timeout=5)
    assert tx_hash == "0xfeed"
    assert confirmation.succeeded
    assert confirmation.gas_used == "21000"
    assert seen[0] == ("POST", "/api/ledger/payments")


@pytest.mark.asyncio
async def test_gateway_rejection_raises_ledger_error():
    def handler(request):
        return httpx.Response(422, json={"error": "nonce too low"})

    with pytest.raises(LedgerError, match="nonce too low"):
        await ledger_with(handler).submit_approval("0xabc", "USDC", "0xdef", "10")


@pytest.mark.asyncio
async def test_confirmation_timeout():
    def handler(request):
        return httpx.Response(200, json={"status": "pending"})

    with pytest.raises(StepTimeoutError):
        await ledger_with(handler, poll_interval=0.01).wait_for_confirmation("0xfeed", timeout=0.05)


def chat_provider(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIReasoningProvider(api_key="sk-test", client=client)


@pytest.mark.asyncio
async def test_openai_provider_returns_message_content():
    def handler(request):
        payload = json.loads(request.content)
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert payload["model"] == "gpt-4"
        assert "balance" in payload["messages"][1]["content"]
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"decision": "skip"}'}}]})

    raw = await chat_provider(handler).complete("Pay?", {"balance": "3"})
    assert parse_decision(raw).decision == "skip"


@pytest.mark.asyncio
async def test_openai_provider_http_error():
    def handler(request):
        return httpx.Response(500, json={"error": "overloaded"})

    with pytest.raises(ProviderError):
        await chat_provider(handler).complete("Pay?", {})


@pytest.mark.asyncio
async def test_openai_provider_missing_content():
    def handler(request):
        return httpx.Response(200, json={"choices": []})

    with pytest.raises(MalformedResponseError):
        await chat_provider(handler).complete("Pay?", {})


@pytest.mark.asyncio
async def test_offline_provider_skips_small_balances():
    decision = parse_decision(await OfflineReasoningProvider().complete("Pay?", {"balance": "0.5"}))
    assert decision.decision == "skip"
    assert decision.parameters == {"amount": "0.1", "shouldExecute": False}


def test_parse_decision_rejects_out_of_range_confidence():
    with pytest.raises(MalformedResponseError):
        parse_decision('{"decision": "execute", "confidence": 7}')


def test_provider_selection():
    assert isinstance(build_reasoning_provider(Settings(_env_file=None, REASONING_PROVIDER="offline")),
                      OfflineReasoningProvider)
    with pytest.raises(ValueError):
        build_reasoning_provider(Settings(_env_file=None, REASONING_PROVIDER="openai", OPENAI_API_KEY=None))
    provider = build_reasoning_provider(Settings(_env_file=None, REASONING_PROVIDER="openai", OPENAI_API_KEY="k"))
    assert isinstance(provider, OpenAIReasoningProvider)
