from __future__ import annotations

import base64
import logging
import re
from typing import Any, Protocol

import httpx
from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from coupon_actions.core.config import settings
from coupon_actions.services.errors import InvalidInput, UpstreamUnavailable

logger = logging.getLogger(__name__)

SYSTEM_PROGRAM = str(SYSTEM_PROGRAM_ID)
_BASE58_SIGNATURE_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{64,88}$")


class LedgerClient(Protocol):
    async def get_latest_blockhash(self) -> str: ...

    async def get_parsed_transaction(self, signature: str) -> dict[str, Any] | None: ...


def parse_pubkey(raw: str | None, *, field: str = "account") -> Pubkey:
    value = (raw or "").strip()
    if not value:
        raise InvalidInput(f'Invalid "{field}" provided')
    try:
        return Pubkey.from_string(value)
    except Exception as exc:
        raise InvalidInput(f'Invalid "{field}" provided') from exc


def parse_signature(raw: str | None) -> Signature:
    value = (raw or "").strip()
    if not _BASE58_SIGNATURE_RE.fullmatch(value):
        raise InvalidInput("Invalid transaction signature")
    try:
        return Signature.from_string(value)
    except Exception as exc:
        raise InvalidInput("Invalid transaction signature") from exc


def build_transfer_transaction(*, payer: Pubkey, recipient: Pubkey, lamports: int, blockhash: str) -> str:
    """Serialise an unsigned SOL transfer paid for by `payer`, base64-encoded for a wallet to sign."""
    instruction = transfer(TransferParams(from_pubkey=payer, to_pubkey=recipient, lamports=int(lamports)))
    message = Message.new_with_blockhash([instruction], payer, Hash.from_string(blockhash))
    tx = Transaction.new_unsigned(message)
    return base64.b64encode(bytes(tx)).decode("ascii")


class SolanaClient:
    """Minimal JSON-RPC client for the two calls the coupon flow needs."""

    def __init__(
        self,
        rpc_url: str | None = None,
        *,
        commitment: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url or settings.solana_rpc_url
        self.commitment = commitment or settings.solana_commitment
        self.timeout = timeout if timeout is not None else settings.solana_rpc_timeout_seconds
        self._transport = transport

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.rpc_url, json=payload)
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("solana_rpc_failed", extra={"method": method, "error": str(exc)})
            raise UpstreamUnavailable("Solana RPC request failed") from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.warning("solana_rpc_error", extra={"method": method, "error": message})
            raise UpstreamUnavailable(f"Solana RPC error: {message}")
        return body.get("result") if isinstance(body, dict) else None

    async def get_latest_blockhash(self) -> str:
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        try:
            return str(result["value"]["blockhash"])
        except (KeyError, TypeError) as exc:
            raise UpstreamUnavailable("Solana RPC returned no blockhash") from exc

    async def get_parsed_transaction(self, signature: str) -> dict[str, Any] | None:
        result = await self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        return result if isinstance(result, dict) else None
