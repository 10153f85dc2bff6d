from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from coupon_actions.core import metrics
from coupon_actions.services.errors import VerificationFailed
from coupon_actions.services.solana import SYSTEM_PROGRAM, LedgerClient

logger = logging.getLogger(__name__)

_TRANSFER_TYPES = {"transfer"}


@dataclass(frozen=True)
class VerifiedPayment:
    signature: str
    recipient: str
    lamports: int
    payer: str | None = None
    slot: int | None = None


@dataclass(frozen=True)
class _Transfer:
    program_id: str
    destination: str | None
    source: str | None


def _account_keys(message: dict[str, Any]) -> list[str]:
    keys: list[str] = []
    for key in message.get("accountKeys") or []:
        if isinstance(key, dict):
            keys.append(str(key.get("pubkey") or ""))
        else:
            keys.append(str(key))
    return keys


def _first_transfer(instructions: list[Any]) -> _Transfer | None:
    for ix in instructions:
        if not isinstance(ix, dict):
            continue
        program_id = str(ix.get("programId") or "")
        parsed = ix.get("parsed")
        if isinstance(parsed, dict):
            if parsed.get("type") not in _TRANSFER_TYPES:
                continue
            info = parsed.get("info") or {}
            if ix.get("program") == "system":
                program_id = SYSTEM_PROGRAM
            return _Transfer(program_id=program_id, destination=info.get("destination"), source=info.get("source"))
        accounts = ix.get("accounts") or []
        # partially decoded system instruction: [source, destination]
        if program_id == SYSTEM_PROGRAM and len(accounts) >= 2:
            return _Transfer(program_id=program_id, destination=str(accounts[1]), source=str(accounts[0]))
    return None


def _fail(signature: str, reason: str) -> VerificationFailed:
    metrics.record_verification_failure()
    logger.warning("payment_verification_failed", extra={"signature": signature, "reason": reason})
    return VerificationFailed(reason)


async def verify_payment(
    ledger: LedgerClient,
    signature: str,
    *,
    expected_recipient: str,
    expected_amount: int,
    expected_payer: str | None = None,
) -> VerifiedPayment:
    """Check that `signature` paid exactly `expected_amount` lamports to `expected_recipient`.

    Fails closed: anything missing or unexpected in the transaction raises
    `VerificationFailed`. A transaction that cannot be found is reported the
    same way since it may simply not be finalized yet; callers decide whether
    to ask the user to retry. Ledger transport errors propagate as
    `UpstreamUnavailable`.
    """
    tx = await ledger.get_parsed_transaction(signature)
    if not tx:
        raise _fail(signature, "Transaction not found or not yet confirmed. Please wait and try again.")

    meta = tx.get("meta") or {}
    if meta.get("err") is not None:
        raise _fail(signature, "Transaction failed on chain")

    message = (tx.get("transaction") or {}).get("message") or {}
    keys = _account_keys(message)
    found = _first_transfer(message.get("instructions") or [])
    if found is None:
        raise _fail(signature, "Unexpected instruction format")
    if found.program_id != SYSTEM_PROGRAM:
        raise _fail(signature, "Payment was not a SOL transfer")
    if found.destination != expected_recipient:
        raise _fail(signature, "Payment was sent to a different recipient")

    try:
        recipient_index = keys.index(expected_recipient)
    except ValueError:
        raise _fail(signature, "Unable to verify transaction amount") from None
    pre_balances = meta.get("preBalances") or []
    post_balances = meta.get("postBalances") or []
    if recipient_index >= len(pre_balances) or recipient_index >= len(post_balances):
        raise _fail(signature, "Unable to verify transaction amount")

    received = int(post_balances[recipient_index]) - int(pre_balances[recipient_index])
    if received != int(expected_amount):
        raise _fail(signature, "Payment amount does not match")

    if expected_payer and expected_payer not in keys:
        raise _fail(signature, "Payment was not made from the expected wallet")

    return VerifiedPayment(
        signature=signature,
        recipient=expected_recipient,
        lamports=received,
        payer=found.source,
        slot=tx.get("slot"),
    )


async def is_payment_valid(
    ledger: LedgerClient,
    signature: str,
    *,
    expected_recipient: str,
    expected_amount: int,
    expected_payer: str | None = None,
) -> bool:
    try:
        await verify_payment(
            ledger,
            signature,
            expected_recipient=expected_recipient,
            expected_amount=expected_amount,
            expected_payer=expected_payer,
        )
    except VerificationFailed:
        return False
    return True
