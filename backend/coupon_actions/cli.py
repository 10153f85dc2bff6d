import argparse
import asyncio
import json
from typing import Any, Dict, Optional

from coupon_actions.db.session import SessionLocal, create_all
from coupon_actions.schemas.coupon import CouponRead
from coupon_actions.services import coupons as coupons_service
from coupon_actions.services.coupon_codes import is_well_formed, normalize_code


async def init_db() -> None:
    await create_all()
    print("Database tables created")


async def lookup_coupon(code: str) -> Optional[Dict[str, Any]]:
    async with SessionLocal() as session:
        coupon = await coupons_service.get_coupon_by_code(session, code)
        if coupon is None:
            return None
        return CouponRead.model_validate(coupon).model_dump(mode="json")


async def expire_stale() -> int:
    async with SessionLocal() as session:
        return await coupons_service.expire_stale_coupons(session)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Coupon Actions utilities")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init-db", help="Create database tables")
    lookup = subparsers.add_parser("lookup", help="Show a coupon by code")
    lookup.add_argument("code")
    subparsers.add_parser("expire-stale", help="Mark lapsed pending/active coupons as expired")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "init-db":
        asyncio.run(init_db())
        return True

    if args.command == "lookup":
        code = normalize_code(args.code)
        if not is_well_formed(code):
            raise SystemExit("Invalid coupon format")
        coupon = asyncio.run(lookup_coupon(code))
        if coupon is None:
            raise SystemExit(f"Coupon not found: {code}")
        print(json.dumps(coupon, indent=2))
        return True

    if args.command == "expire-stale":
        count = asyncio.run(expire_stale())
        print(f"Expired {count} coupon(s)")
        return True

    return False


def main():
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
