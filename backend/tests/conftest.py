import asyncio
import os
from collections.abc import Callable, Generator
from typing import Any

import pytest
from solders.pubkey import Pubkey
from solders.signature import Signature
from sqlalchemy.ext import asyncio as sa_asyncio

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""
os.environ["REDIS_URL"] = ""

from coupon_actions.core import metrics
from coupon_actions.core.config import settings
from coupon_actions.services import session_store
from coupon_actions.services.errors import UpstreamUnavailable
from coupon_actions.services.solana import SYSTEM_PROGRAM


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]


class FakeLedger:
    """In-memory stand-in for the Solana RPC client."""

    def __init__(self) -> None:
        self.transactions: dict[str, dict[str, Any]] = {}
        self.blockhash = str(Pubkey.new_unique())
        self.calls: list[str] = []
        self.unavailable = False

    async def get_latest_blockhash(self) -> str:
        self._check("getLatestBlockhash")
        return self.blockhash

    async def get_parsed_transaction(self, signature: str) -> dict[str, Any] | None:
        self._check("getTransaction")
        return self.transactions.get(signature)

    def _check(self, method: str) -> None:
        self.calls.append(method)
        if self.unavailable:
            raise UpstreamUnavailable("Solana RPC request failed")


def make_transfer_tx(
    *,
    payer: str,
    recipient: str | None = None,
    lamports: int | None = None,
    err: Any = None,
) -> dict[str, Any]:
    recipient = recipient or settings.payment_recipient
    amount = settings.payment_lamports if lamports is None else lamports
    return {
        "slot": 42,
        "meta": {
            "err": err,
            "fee": 5000,
            "preBalances": [1_000_000_000, 2_000_000, 1],
            "postBalances": [1_000_000_000 - amount - 5000, 2_000_000 + amount, 1],
        },
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": payer, "signer": True, "writable": True},
                    {"pubkey": recipient, "signer": False, "writable": True},
                    {"pubkey": SYSTEM_PROGRAM, "signer": False, "writable": False},
                ],
                "instructions": [
                    {
                        "program": "system",
                        "programId": SYSTEM_PROGRAM,
                        "parsed": {
                            "type": "transfer",
                            "info": {"source": payer, "destination": recipient, "lamports": amount},
                        },
                    }
                ],
            }
        },
    }


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def wallet() -> str:
    return str(Pubkey.new_unique())


@pytest.fixture
def new_signature() -> Callable[[], str]:
    return lambda: str(Signature.new_unique())


@pytest.fixture
def paid(ledger: FakeLedger, new_signature: Callable[[], str]) -> Callable[..., str]:
    """Record a finalized transfer on the fake ledger and return its signature."""

    def _paid(payer: str, **kwargs: Any) -> str:
        signature = new_signature()
        ledger.transactions[signature] = make_transfer_tx(payer=payer, **kwargs)
        return signature

    return _paid


@pytest.fixture(autouse=True)
def _reset_process_state() -> Generator[None, None, None]:
    # Counters and the in-memory conversation store are process-global.
    metrics.reset()
    store = session_store.get_session_store()
    if isinstance(store, session_store.InMemorySessionStore):
        store.clear()
    yield
    metrics.reset()
    if isinstance(store, session_store.InMemorySessionStore):
        store.clear()


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            try:
                await engine.dispose()
            except Exception:
                continue

    try:
        asyncio.run(_dispose_all())
    except RuntimeError:
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(_dispose_all())
        finally:
            loop.close()

    del _TRACKED_ENGINES[start_index:]
