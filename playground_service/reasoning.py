"""
Reasoning providers for ``llm_agent`` steps.

A provider turns a prompt plus resolved context into a JSON string;
``parse_decision`` validates it into an ``AgentDecision``. Which provider a
service uses is configuration (``REASONING_PROVIDER``); the offline provider
is deterministic and never silently substituted for a failing remote one.
"""

import json
import logging
import re
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from .config import Settings, get_settings
from .errors import MalformedResponseError, ProviderError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")

SYSTEM_PROMPT = (
    "You are an on-chain execution agent. Answer with STRICT JSON only, shaped as "
    '{"decision": "execute"|"skip", "reasoning": str, "confidence": number 0-1, '
    '"parameters": object}.'
)


class AgentDecision(BaseModel):
    model_config = ConfigDict(extra="ignore")

    decision: str
    reasoning: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    parameters: Dict[str, Any] = Field(default_factory=dict)


def parse_decision(raw: str) -> AgentDecision:
    text = _FENCE_RE.sub("", (raw or "").strip())
    try:
        return AgentDecision.model_validate_json(text)
    except ValidationError as e:
        raise MalformedResponseError(f"reasoning provider returned an unusable response: {e.errors()[0]['msg']}")


def build_prompt(prompt: str, context: Dict[str, Any]) -> str:
    return f"{prompt}\n\nContext:\n{json.dumps(context, indent=2, sort_keys=True, default=str)}"


class ReasoningProvider:
    name = "base"

    async def complete(self, prompt: str, context: Dict[str, Any], **options) -> str:
        raise NotImplementedError


class OfflineReasoningProvider(ReasoningProvider):
    """Rule-based stand-in: execute when the TCRO balance exceeds 1, sizing at 20% capped at 10."""
    name = "offline"

    @staticmethod
    def _balance(context: Dict[str, Any]) -> Decimal:
        candidates = [context.get("balance")]
        wallet = context.get("wallet") or {}
        candidates.append((wallet.get("balances") or {}).get("TCRO"))
        for value in candidates:
            if value is None:
                continue
            try:
                return Decimal(str(value))
            except ArithmeticError:
                continue
        return Decimal(0)

    async def complete(self, prompt: str, context: Dict[str, Any], **options) -> str:
        balance = self._balance(context)
        should_execute = balance > 1
        amount = min(balance * Decimal("0.2"), Decimal(10)).quantize(Decimal("0.01"))
        if should_execute:
            reasoning = f"Balance: {balance} TCRO. Recommending {amount} TCRO for execution."
        else:
            reasoning = f"Insufficient balance: {balance} TCRO."
        return json.dumps({
            "decision": "execute" if should_execute else "skip",
            "reasoning": reasoning,
            "confidence": 0.85,
            "parameters": {"amount": format(amount.normalize(), "f") if amount else "0", "shouldExecute": should_execute},
        })


class OpenAIReasoningProvider(ReasoningProvider):
    name = "openai"

    def __init__(self, api_key: str, base_url: Optional[str] = None, model: str = "gpt-4",
                 timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.base_url = base_url or "https://api.openai.com/v1/chat/completions"
        self.model = model
        self.timeout = timeout
        self._client = client

    async def _post(self, headers: Dict[str, str], payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._client is not None:
            resp = await self._client.post(self.base_url, headers=headers, json=payload)
            resp.raise_for_status()
            return resp.json()
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.base_url, headers=headers, json=payload)
            resp.raise_for_status()
            return resp.json()

    async def complete(self, prompt: str, context: Dict[str, Any], **options) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": options.get("model") or self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(prompt, context)},
            ],
            "max_tokens": int(options.get("max_tokens", 500)),
            "temperature": float(options.get("temperature", 0.7)),
        }
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(2),
                wait=wait_fixed(1),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    data = await self._post(headers, payload)
        except httpx.HTTPError as e:
            logger.warning("reasoning provider request failed: %s", e)
            raise ProviderError(f"reasoning provider request failed: {e}")
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise MalformedResponseError("reasoning provider response has no message content")


def build_reasoning_provider(settings: Optional[Settings] = None) -> ReasoningProvider:
    settings = settings or get_settings()
    choice = (settings.REASONING_PROVIDER or "offline").lower()
    if choice == "openai":
        if not settings.OPENAI_API_KEY:
            raise ValueError("REASONING_PROVIDER=openai requires OPENAI_API_KEY")
        return OpenAIReasoningProvider(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            model=settings.REASONING_MODEL,
            timeout=settings.REASONING_TIMEOUT_SECONDS,
        )
    if choice == "offline":
        return OfflineReasoningProvider()
    raise ValueError(f"unknown REASONING_PROVIDER '{settings.REASONING_PROVIDER}'")
