# pledges.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import get_settings, require_auth
from .campaigns import parse_money
from .config import Settings
from .db import atomic, get_db
from .errors import (
    AuthorizationError, ConflictError, InvalidStateError, NotFoundError, PaymentDeclinedError,
    PaymentError, ValidationError,
)
from .models import (
    LIVE_PLEDGE_STATUSES, PLEDGE_ACTIVE, PLEDGE_CANCELLED, PLEDGE_COMPLETED,
    Campaign, Pledge, PledgeLevel, Settlement, User,
)
from .payments import PaymentProvider, Receipt, capture
from .schemas import CaptureIn, PledgeCreate, PledgeOut, SettlementOut
from .settlement import build_settlement, get_settlement

logger = logging.getLogger(__name__)

# ---------- Helpers ----------

def _to_out(p: Pledge, campaign_name: Optional[str] = None) -> PledgeOut:
    return PledgeOut(
        id=p.id,
        user_id=p.user_id,
        campaign_id=p.campaign_id,
        campaign_name=campaign_name,
        level_id=p.level_id,
        amount=float(p.amount),
        status=p.status,
        payment_method=p.payment_method,
        transaction_id=p.transaction_id,
        created_at=p.created_at,
    )


def _get_pledge(db: Session, pledge_id: int) -> Pledge:
    pledge = db.get(Pledge, pledge_id)
    if pledge is None:
        raise NotFoundError("Pledge not found")
    return pledge


def _owned_pledge(db: Session, pledge_id: int, requesting_user_id: int) -> Pledge:
    pledge = _get_pledge(db, pledge_id)
    if pledge.user_id != requesting_user_id:
        raise AuthorizationError("Pledge belongs to another user")
    return pledge


def check_pledge_target(db: Session, campaign_id: int, amount, level_id: Optional[int] = None) -> Decimal:
    """Validate a pledge before anything is written or charged; returns the amount."""
    amount = parse_money(amount, "amount", allow_zero=False)
    if db.get(Campaign, campaign_id) is None:
        raise NotFoundError("Campaign not found")
    if level_id is not None:
        level = db.get(PledgeLevel, level_id)
        if level is None or level.campaign_id != campaign_id:
            raise ValidationError("Pledge level does not belong to this campaign")
    return amount


def _check_receipt(receipt: Receipt, amount: Decimal) -> None:
    if Decimal(str(receipt.amount)) != amount:
        raise PaymentDeclinedError("Captured amount does not match the pledge amount")


def receipt_in_use(db: Session, provider: str, external_id: str) -> bool:
    """True when a pledge already records this provider payment."""
    return db.execute(
        select(Pledge.id).where(Pledge.payment_method == provider, Pledge.transaction_id == external_id)
    ).first() is not None


def _ensure_receipt_unused(db: Session, receipt: Receipt) -> None:
    if receipt_in_use(db, receipt.provider, receipt.external_id):
        raise ConflictError("This payment is already recorded for a pledge")


# ---------- Service ----------

def create_pledge(db: Session, settings: Settings, user_id: int, campaign_id: int, amount,
                  level_id: Optional[int] = None, receipt: Optional[Receipt] = None) -> Pledge:
    """Record a pledge.

    Without a receipt the pledge waits in ``active`` for capture. With one it
    is an already-captured payment: stored ``completed`` and settled in the
    same transaction.
    """
    amount = check_pledge_target(db, campaign_id, amount, level_id)
    if receipt is not None:
        _check_receipt(receipt, amount)
        _ensure_receipt_unused(db, receipt)

    pledge = Pledge(
        user_id=user_id,
        campaign_id=campaign_id,
        level_id=level_id,
        amount=amount,
        status=PLEDGE_COMPLETED if receipt else PLEDGE_ACTIVE,
        payment_method=receipt.provider if receipt else None,
        transaction_id=receipt.external_id if receipt else None,
    )
    try:
        with atomic(db):
            db.add(pledge)
            if receipt is not None:
                db.flush()
                db.add(build_settlement(pledge, settings.platform_fee_percent))
    except IntegrityError as e:
        # the same payment was recorded concurrently
        raise ConflictError("This payment is already recorded for a pledge") from e
    db.refresh(pledge)
    logger.info("Pledge %s: user %s -> campaign %s, %s (%s)",
                pledge.id, user_id, campaign_id, amount, pledge.status)
    return pledge


def complete_pledge(db: Session, settings: Settings, pledge_id: int, receipt: Receipt) -> Pledge:
    """active -> completed on payment capture, settling in the same transaction."""
    pledge = _get_pledge(db, pledge_id)
    if pledge.status != PLEDGE_ACTIVE:
        raise InvalidStateError(f"Pledge is {pledge.status}, only active pledges can be completed")
    _check_receipt(receipt, Decimal(str(pledge.amount)))
    _ensure_receipt_unused(db, receipt)

    try:
        with atomic(db):
            pledge.status = PLEDGE_COMPLETED
            pledge.payment_method = receipt.provider
            pledge.transaction_id = receipt.external_id
            already = db.execute(
                select(Settlement.id).where(Settlement.pledge_id == pledge.id)
            ).first()
            if not already:
                db.add(build_settlement(pledge, settings.platform_fee_percent))
    except IntegrityError as e:
        pledge = _get_pledge(db, pledge_id)
        if pledge.status == PLEDGE_COMPLETED and pledge.transaction_id == receipt.external_id:
            # a concurrent completion with the same receipt settled it first
            return pledge
        raise ConflictError("This payment is already recorded for a pledge") from e

    db.refresh(pledge)
    logger.info("Pledge %s completed via %s (%s)", pledge.id, receipt.provider, receipt.external_id)
    return pledge


def fail_pledge(db: Session, pledge_id: int, reason: str = "") -> Pledge:
    """active -> cancelled when the payment is refused."""
    pledge = _get_pledge(db, pledge_id)
    if pledge.status != PLEDGE_ACTIVE:
        raise InvalidStateError(f"Pledge is {pledge.status}")
    with atomic(db):
        pledge.status = PLEDGE_CANCELLED
    logger.warning("Pledge %s cancelled after payment failure: %s", pledge_id, reason)
    return pledge


def cancel_pledge(db: Session, pledge_id: int, requesting_user_id: int) -> Pledge:
    """User cancellation. Completed pledges are terminal; their settlement stands."""
    pledge = _owned_pledge(db, pledge_id, requesting_user_id)
    if pledge.status == PLEDGE_CANCELLED:
        raise InvalidStateError("Pledge already cancelled")
    if pledge.status == PLEDGE_COMPLETED:
        raise InvalidStateError("Completed pledges cannot be cancelled")
    with atomic(db):
        pledge.status = PLEDGE_CANCELLED
    logger.info("Pledge %s cancelled by user %s", pledge_id, requesting_user_id)
    return pledge


def list_pledges_for_user(db: Session, user_id: int, include_cancelled: bool = False) -> List[PledgeOut]:
    stmt = (
        select(Pledge, Campaign.name)
        .join(Campaign, Pledge.campaign_id == Campaign.id)
        .where(Pledge.user_id == user_id)
        .order_by(Pledge.created_at.desc(), Pledge.id.desc())
    )
    if not include_cancelled:
        stmt = stmt.where(Pledge.status.in_(LIVE_PLEDGE_STATUSES))
    return [_to_out(p, name) for p, name in db.execute(stmt)]


def settlement_for(db: Session, pledge_id: int, requesting_user_id: int) -> Settlement:
    """Visible to the pledger and to the campaign owner."""
    pledge = _get_pledge(db, pledge_id)
    if requesting_user_id not in (pledge.user_id, pledge.campaign.user_id):
        raise AuthorizationError("Not allowed to view this settlement")
    return get_settlement(db, pledge_id)


# ---------- Routes ----------

def get_payment_provider(request: Request) -> Optional[PaymentProvider]:
    return getattr(request.app.state, "payment_provider", None)


router = APIRouter(prefix="/pledges", tags=["pledges"])


@router.post("")
def create_pledge_route(
    payload: PledgeCreate,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
):
    receipt = None
    if payload.order_id:
        amount = check_pledge_target(db, payload.campaign_id, payload.amount, payload.level_id)
        if provider is not None and receipt_in_use(db, provider.name, payload.order_id):
            raise ConflictError("This payment is already recorded for a pledge")
        receipt = capture(provider, payload.order_id, amount)
    pledge = create_pledge(db, settings, user.id, payload.campaign_id, payload.amount,
                           level_id=payload.level_id, receipt=receipt)
    return {"message": "Pledge created successfully", "pledgeId": pledge.id, "status": pledge.status}


@router.get("", response_model=List[PledgeOut])
def list_pledges_route(
    include_cancelled: bool = Query(False),
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
):
    return list_pledges_for_user(db, user.id, include_cancelled)


@router.post("/{pledge_id}/capture", response_model=PledgeOut)
def capture_pledge_route(
    pledge_id: int,
    payload: CaptureIn,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
):
    pledge = _owned_pledge(db, pledge_id, user.id)
    if pledge.status != PLEDGE_ACTIVE:
        raise InvalidStateError(f"Pledge is {pledge.status}, only active pledges can be captured")
    if provider is None:
        raise PaymentError("No payment provider is configured")
    if receipt_in_use(db, provider.name, payload.order_id):
        raise ConflictError("This payment is already recorded for a pledge")
    # only a definitive decline cancels; an unreachable provider leaves it active for a retry
    try:
        receipt = capture(provider, payload.order_id, Decimal(str(pledge.amount)))
    except PaymentDeclinedError as e:
        fail_pledge(db, pledge_id, e.message)
        raise
    return _to_out(complete_pledge(db, settings, pledge_id, receipt))


@router.get("/{pledge_id}/settlement", response_model=SettlementOut)
def settlement_route(pledge_id: int, user: User = Depends(require_auth), db: Session = Depends(get_db)):
    return settlement_for(db, pledge_id, user.id)


@router.delete("/{pledge_id}")
def cancel_pledge_route(pledge_id: int, user: User = Depends(require_auth), db: Session = Depends(get_db)):
    cancel_pledge(db, pledge_id, user.id)
    return {"message": "Pledge cancelled successfully"}
