from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from coupon_actions.core.config import settings
from coupon_actions.core.dependencies import get_ledger
from coupon_actions.db.session import get_session
from coupon_actions.models.coupon import Coupon, CouponStatus
from coupon_actions.schemas.actions import (
    ActionDescriptor,
    ActionError,
    ActionPostRequest,
    ActionPostResponse,
    ActionRule,
    ActionsManifest,
    PaymentWebhookRequest,
    PaymentWebhookResponse,
)
from coupon_actions.services import coupons as coupons_service
from coupon_actions.services.coupon_codes import is_well_formed, normalize_code
from coupon_actions.services.errors import AlreadyUsed, CouponError, InvalidInput, UpstreamUnavailable
from coupon_actions.services.payment_verifier import verify_payment
from coupon_actions.services.solana import LedgerClient, build_transfer_transaction, parse_pubkey, parse_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["actions"])


def _error(message: str, status_code: int = status.HTTP_400_BAD_REQUEST) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ActionError(error=message).model_dump())


def _error_for(exc: Exception) -> JSONResponse:
    if isinstance(exc, UpstreamUnavailable):
        return _error(exc.message, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if isinstance(exc, CouponError):
        return _error(exc.message)
    return _error("An unknown error occurred", status.HTTP_500_INTERNAL_SERVER_ERROR)


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidInput("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise InvalidInput("Request body must be a JSON object")
    return body


@router.get("/actions.json", response_model=ActionsManifest)
def actions_manifest() -> ActionsManifest:
    return ActionsManifest(
        rules=[
            ActionRule(pathPattern="/coupon", apiPath="/api/actions/coupon"),
            # idempotent fallback so action URLs resolve to themselves
            ActionRule(pathPattern="/api/actions/**", apiPath="/api/actions/**"),
        ]
    )


@router.get("/api/actions/coupon", response_model=ActionDescriptor)
def coupon_action(request: Request) -> ActionDescriptor:
    origin = f"{request.url.scheme}://{request.url.netloc}"
    return ActionDescriptor(
        title=settings.action_title,
        icon=f"{origin}{settings.action_icon_path}",
        description=settings.action_description,
        label=settings.action_label,
    )


@router.post("/api/actions/coupon", response_model=ActionPostResponse | PaymentWebhookResponse)
async def coupon_action_post(
    request: Request,
    webhook: str | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
    ledger: LedgerClient = Depends(get_ledger),
):
    if webhook == "true":
        return await _payment_webhook(request, session, ledger)
    return await _purchase(request, session, ledger)


async def _purchase(request: Request, session: AsyncSession, ledger: LedgerClient):
    try:
        body = ActionPostRequest.model_validate(await _json_body(request))
        account = parse_pubkey(body.account)
        recipient = parse_pubkey(settings.payment_recipient, field="recipient")
        blockhash = await ledger.get_latest_blockhash()
        transaction = build_transfer_transaction(
            payer=account,
            recipient=recipient,
            lamports=settings.payment_lamports,
            blockhash=blockhash,
        )
        coupon = await coupons_service.issue_coupon(session, owner_account=str(account))
    except ValidationError:
        return _error('Invalid "account" provided')
    except CouponError as exc:
        logger.warning("coupon_purchase_failed", extra={"reason": exc.code, "detail": exc.message})
        return _error_for(exc)
    except SQLAlchemyError:
        logger.exception("coupon_purchase_storage_failed")
        return _error("Failed to store coupon", status.HTTP_500_INTERNAL_SERVER_ERROR)

    return ActionPostResponse(transaction=transaction, message=f"Your coupon code is: {coupon.code}")


async def _confirm_payment(session: AsyncSession, ledger: LedgerClient, body: PaymentWebhookRequest) -> Coupon:
    if not body.signature:
        raise InvalidInput("Missing transaction signature")
    signature = str(parse_signature(body.signature))

    if body.code:
        code = normalize_code(body.code)
        if not is_well_formed(code):
            raise InvalidInput("Invalid coupon format")
        coupon = await coupons_service.get_coupon_by_code(session, code)
        coupon = await coupons_service.ensure_redeemable(session, coupon)
        await verify_payment(
            ledger,
            signature,
            expected_recipient=settings.payment_recipient,
            expected_amount=settings.payment_lamports,
            expected_payer=coupon.owner_account,
        )
        return await coupons_service.activate_coupon(session, coupon, payment_signature=signature)

    # No code: the payment itself buys a fresh, already active coupon.
    if await coupons_service.is_signature_recorded(session, signature):
        raise AlreadyUsed("This payment has already been used for another coupon")
    payment = await verify_payment(
        ledger,
        signature,
        expected_recipient=settings.payment_recipient,
        expected_amount=settings.payment_lamports,
    )
    return await coupons_service.issue_coupon(
        session,
        owner_account=payment.payer,
        status=CouponStatus.active,
        payment_signature=signature,
    )


async def _payment_webhook(request: Request, session: AsyncSession, ledger: LedgerClient):
    try:
        body = PaymentWebhookRequest.model_validate(await _json_body(request))
        coupon = await _confirm_payment(session, ledger, body)
    except ValidationError:
        return _error("Invalid webhook payload")
    except UpstreamUnavailable as exc:
        logger.error("payment_webhook_upstream_failed", extra={"detail": exc.message})
        return _error_for(exc)
    except CouponError as exc:
        logger.warning("payment_webhook_rejected", extra={"reason": exc.code, "detail": exc.message})
        return _error_for(exc)
    except SQLAlchemyError:
        logger.exception("payment_webhook_storage_failed")
        return _error("Failed to store coupon", status.HTTP_500_INTERNAL_SERVER_ERROR)

    return PaymentWebhookResponse(code=coupon.code, status=coupon.status.value)
