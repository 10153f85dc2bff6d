from __future__ import annotations

import hashlib
import re
import secrets

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coupon_actions.models.coupon import Coupon

CODE_LENGTH = 12
RANDOM_BYTES = 8
CODE_RE = re.compile(r"^[A-Z0-9]{12}$")


def generate_code() -> str:
    digest = hashlib.sha256(secrets.token_bytes(RANDOM_BYTES)).hexdigest()
    return digest[:CODE_LENGTH].upper()


def normalize_code(raw: str | None) -> str:
    return (raw or "").strip().upper()


def is_well_formed(code: str) -> bool:
    return bool(CODE_RE.fullmatch(code))


async def is_code_unique(session: AsyncSession, code: str) -> bool:
    """True when no coupon, in any status, already carries `code`."""
    count = await session.scalar(select(func.count()).select_from(Coupon).where(Coupon.code == code))
    return not count
