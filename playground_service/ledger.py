"""
Ledger collaborator used by execute-mode runs.

``LedgerClient`` is the interface the live state adapter talks to. The
production implementation, ``HttpLedgerClient``, calls a signing ledger
gateway over HTTP; key custody, nonce handling and RPC access live behind
that gateway, not in this service.

Gateway endpoints (JSON):
    GET  /balances/{address}?token=SYM   -> {"token", "balance"} | 404 unknown token
    GET  /contracts/{name}               -> {"name", "address", "deployed", "status"} | 404
    POST /payments                       -> {"txHash"}
    POST /approvals                      -> {"txHash"}
    POST /contract-calls                 -> {"txHash"}
    GET  /transactions/{hash}            -> {"status": pending|confirmed|failed, "gasUsed", "result"}
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from .errors import LedgerError, StepTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerConfirmation:
    tx_hash: str
    status: str
    gas_used: Optional[str] = None
    result: Any = None

    @property
    def succeeded(self) -> bool:
        return self.status == "confirmed"


class LedgerClient:
    """
    Ledger interface (balances, contract state, signed submissions).

    Submissions return a transaction hash immediately; callers then await
    ``wait_for_confirmation``.
    """

    async def get_balance(self, address: str, token: str) -> Optional[str]:
        """Decimal-string balance of ``token`` for ``address``; None if the token is unknown."""
        raise NotImplementedError("Implement in subclass")

    async def get_contract(self, name: str) -> Optional[Dict[str, Any]]:
        """``{address, deployed, status}`` for a registered contract, None if unknown."""
        raise NotImplementedError("Implement in subclass")

    async def submit_payment(self, sender: str, to: str, token: str, amount: str,
                             metadata: Optional[Dict[str, Any]] = None) -> str:
        raise NotImplementedError("Implement in subclass")

    async def submit_approval(self, owner: str, token: str, spender: str, amount: str) -> str:
        raise NotImplementedError("Implement in subclass")

    async def submit_contract_call(self, caller: str, contract: str, method: str,
                                   args: List[Any], value: str) -> str:
        raise NotImplementedError("Implement in subclass")

    async def wait_for_confirmation(self, tx_hash: str, timeout: float) -> LedgerConfirmation:
        raise NotImplementedError("Implement in subclass")

    async def aclose(self) -> None:
        return None


class HttpLedgerClient(LedgerClient):
    def __init__(
        self,
        base_url: str,
        request_timeout: float = 15.0,
        poll_interval: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=request_timeout)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        # Reads are idempotent, so transport errors get one retry.
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(0.5),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                resp = await self._client.get(path, params=params)
                if resp.status_code == 404:
                    return None
                self._raise_for_status(resp, path)
                return resp.json()
        return None

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            raise LedgerError(f"ledger gateway unreachable: {e}")
        self._raise_for_status(resp, path)
        data = resp.json()
        if not data.get("txHash"):
            raise LedgerError(f"ledger gateway returned no transaction hash for {path}")
        return data

    @staticmethod
    def _raise_for_status(resp: httpx.Response, path: str) -> None:
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("error") or resp.text
            except ValueError:
                detail = resp.text
            raise LedgerError(f"ledger gateway {path} failed ({resp.status_code}): {detail}")

    async def get_balance(self, address: str, token: str) -> Optional[str]:
        try:
            data = await self._get(f"/balances/{address}", params={"token": token})
        except httpx.HTTPError as e:
            raise LedgerError(f"ledger gateway unreachable: {e}")
        if data is None:
            return None
        return str(data.get("balance", "0"))

    async def get_contract(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self._get(f"/contracts/{name}")
        except httpx.HTTPError as e:
            raise LedgerError(f"ledger gateway unreachable: {e}")
        if data is None:
            return None
        return {
            "address": data.get("address"),
            "deployed": bool(data.get("deployed", True)),
            "status": data.get("status") or ("deployed" if data.get("deployed", True) else "not_deployed"),
        }

    async def submit_payment(self, sender, to, token, amount, metadata=None) -> str:
        payload = {"from": sender, "to": to, "token": token, "amount": amount, "metadata": metadata or {}}
        data = await self._post("/payments", payload)
        logger.info("payment submitted tx=%s token=%s amount=%s", data["txHash"], token, amount)
        return data["txHash"]

    async def submit_approval(self, owner, token, spender, amount) -> str:
        payload = {"owner": owner, "token": token, "spender": spender, "amount": amount}
        data = await self._post("/approvals", payload)
        logger.info("approval submitted tx=%s token=%s spender=%s", data["txHash"], token, spender)
        return data["txHash"]

    async def submit_contract_call(self, caller, contract, method, args, value) -> str:
        payload = {"from": caller, "contract": contract, "method": method, "args": list(args), "value": value}
        data = await self._post("/contract-calls", payload)
        logger.info("contract call submitted tx=%s %s.%s", data["txHash"], contract, method)
        return data["txHash"]

    async def wait_for_confirmation(self, tx_hash: str, timeout: float) -> LedgerConfirmation:
        deadline = time.monotonic() + timeout
        while True:
            try:
                data = await self._get(f"/transactions/{tx_hash}")
            except httpx.HTTPError as e:
                raise LedgerError(f"ledger gateway unreachable: {e}")
            if data is not None and data.get("status") in ("confirmed", "failed"):
                return LedgerConfirmation(
                    tx_hash=tx_hash,
                    status=data["status"],
                    gas_used=str(data["gasUsed"]) if data.get("gasUsed") is not None else None,
                    result=data.get("result"),
                )
            if time.monotonic() >= deadline:
                raise StepTimeoutError(f"transaction {tx_hash} not confirmed within {timeout}s")
            await asyncio.sleep(self.poll_interval)

    async def aclose(self) -> None:
        await self._client.aclose()
