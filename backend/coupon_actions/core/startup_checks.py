from __future__ import annotations

import logging

from coupon_actions.core.config import DEFAULT_PAYMENT_RECIPIENT, settings

logger = logging.getLogger(__name__)


def _is_production() -> bool:
    env = (settings.environment or "").strip().lower()
    return env in {"prod", "production"}


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def collect_production_problems() -> list[str]:
    problems: list[str] = []
    _append_if(
        problems,
        condition=not (settings.telegram_bot_token or "").strip(),
        message="TELEGRAM_BOT_TOKEN must be configured in production.",
    )
    _append_if(
        problems,
        condition=(settings.database_url or "").strip().lower().startswith("sqlite"),
        message="DATABASE_URL must point at a server database in production (not sqlite).",
    )
    _append_if(
        problems,
        condition=(settings.payment_recipient or "").strip() == DEFAULT_PAYMENT_RECIPIENT,
        message="PAYMENT_RECIPIENT must be changed from the default.",
    )
    _append_if(
        problems,
        condition=settings.payment_lamports <= 0,
        message="PAYMENT_LAMPORTS must be a positive integer.",
    )
    _append_if(
        problems,
        condition=settings.coupon_max_attempts <= 0,
        message="COUPON_MAX_ATTEMPTS must be a positive integer.",
    )
    return problems


def validate_production_settings() -> None:
    if not _is_production():
        return
    problems = collect_production_problems()
    if problems:
        for problem in problems:
            logger.error("startup_check_failed", extra={"problem": problem})
        raise RuntimeError("Invalid production configuration:\n- " + "\n- ".join(problems))
