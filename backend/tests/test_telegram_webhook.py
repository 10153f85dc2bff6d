import asyncio
import logging
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from coupon_actions.core.config import settings
from coupon_actions.core.dependencies import get_chat_messenger, get_ledger, get_redemption_store
from coupon_actions.db.base import Base
from coupon_actions.db.session import get_session
from coupon_actions.main import app
from coupon_actions.models.coupon import CouponStatus
from coupon_actions.services import coupons as coupons_service
from coupon_actions.services import redemption
from coupon_actions.services.errors import UpstreamUnavailable
from coupon_actions.services.session_store import InMemorySessionStore
from coupon_actions.services.telegram import parse_update

CHAT_ID = 4242


class FakeMessenger:
    def __init__(self) -> None:
        self.sent: list[tuple[int, str]] = []
        self.fail = False

    async def send_text(self, chat_id: int, text: str) -> None:
        if self.fail:
            raise UpstreamUnavailable("Telegram send failed")
        self.sent.append((chat_id, text))


def _update(text: str, update_id: int = 1) -> dict:
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id,
            "date": 1_700_000_000,
            "chat": {"id": CHAT_ID, "type": "private"},
            "from": {"id": CHAT_ID, "is_bot": False, "first_name": "Ana"},
            "text": text,
        },
    }


@pytest.fixture
def test_app(ledger) -> Dict[str, object]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    messenger = FakeMessenger()
    store = InMemorySessionStore()
    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_redemption_store] = lambda: store
    app.dependency_overrides[get_chat_messenger] = lambda: messenger
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal, "messenger": messenger, "store": store}
    client.close()
    app.dependency_overrides.clear()


def test_webhook_status(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    res = client.get("/api/webhook")

    assert res.status_code == 200
    assert res.json() == {"message": "Webhook is active"}


def test_dialog_over_webhook_redeems_coupon(test_app: Dict[str, object], wallet: str, paid) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    messenger: FakeMessenger = test_app["messenger"]  # type: ignore[assignment]
    session_factory: async_sessionmaker = test_app["session_factory"]  # type: ignore[assignment]

    async def _issue() -> str:
        async with session_factory() as session:
            return (await coupons_service.issue_coupon(session, owner_account=wallet)).code

    code = asyncio.run(_issue())
    signature = paid(wallet)

    for index, text in enumerate(["/start", code, wallet, signature], start=1):
        res = client.post("/api/webhook", json=_update(text, index))
        assert res.status_code == 200, res.text
        assert res.json() == {"ok": True}

    assert [text for _, text in messenger.sent] == [
        redemption.PROMPT_COUPON,
        redemption.PROMPT_WALLET,
        redemption.PROMPT_SIGNATURE,
        redemption.SUCCESS.format(url=settings.reward_url),
    ]
    assert {chat for chat, _ in messenger.sent} == {CHAT_ID}

    async def _status() -> CouponStatus:
        async with session_factory() as session:
            return (await coupons_service.get_coupon_by_code(session, code)).status

    assert asyncio.run(_status()) == CouponStatus.used


def test_non_text_updates_are_acknowledged(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    messenger: FakeMessenger = test_app["messenger"]  # type: ignore[assignment]

    res = client.post("/api/webhook", json={"update_id": 5})

    assert res.status_code == 200
    assert res.json() == {"ok": True}
    assert messenger.sent == []


def test_malformed_update_is_a_server_error(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    res = client.post("/api/webhook", json=["not", "an", "update"])

    assert res.status_code == 500
    assert res.json() == {"error": "Internal Server Error"}


def test_send_failure_is_acknowledged(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    messenger: FakeMessenger = test_app["messenger"]  # type: ignore[assignment]
    messenger.fail = True

    res = client.post("/api/webhook", json=_update("/start"))

    assert res.status_code == 200
    assert res.json() == {"ok": True}


def test_undelivered_reward_is_logged_after_redemption(
    test_app: Dict[str, object], wallet: str, paid, caplog: pytest.LogCaptureFixture
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    messenger: FakeMessenger = test_app["messenger"]  # type: ignore[assignment]
    session_factory: async_sessionmaker = test_app["session_factory"]  # type: ignore[assignment]

    async def _issue() -> str:
        async with session_factory() as session:
            return (await coupons_service.issue_coupon(session, owner_account=wallet)).code

    code = asyncio.run(_issue())
    for index, text in enumerate(["/start", code, wallet], start=1):
        assert client.post("/api/webhook", json=_update(text, index)).status_code == 200

    messenger.fail = True
    with caplog.at_level(logging.ERROR, logger="coupon_actions.api.v1.webhook"):
        res = client.post("/api/webhook", json=_update(paid(wallet), 4))

    # Telegram must not redeliver: the coupon is already spent
    assert res.status_code == 200
    assert res.json() == {"ok": True}
    failures = [record for record in caplog.records if record.getMessage() == "telegram_reply_failed"]
    assert len(failures) == 1
    assert failures[0].chat_id == CHAT_ID
    assert failures[0].coupon == f"{code[:4]}********"
    assert failures[0].undelivered == [redemption.SUCCESS.format(url=settings.reward_url)]

    async def _status() -> CouponStatus:
        async with session_factory() as session:
            return (await coupons_service.get_coupon_by_code(session, code)).status

    assert asyncio.run(_status()) == CouponStatus.used


def test_missing_bot_token_is_a_server_error(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    app.dependency_overrides[get_chat_messenger] = lambda: None

    res = client.post("/api/webhook", json=_update("/start"))

    assert res.status_code == 500
    assert res.json() == {"error": "Internal Server Error"}


def test_webhook_secret_is_enforced(monkeypatch: pytest.MonkeyPatch, test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    monkeypatch.setattr(settings, "telegram_webhook_secret", "s3cret")

    denied = client.post("/api/webhook", json=_update("/start"))
    allowed = client.post(
        "/api/webhook", json=_update("/start", 2), headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"}
    )

    assert denied.status_code == 403
    assert allowed.status_code == 200


def test_parse_update_extracts_chat_and_text() -> None:
    incoming = parse_update(_update("hello"))

    assert incoming is not None
    assert incoming.chat_id == CHAT_ID
    assert incoming.text == "hello"
    assert parse_update({"update_id": 9}) is None
    with pytest.raises(ValueError):
        parse_update("nope")
