from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import Settings
from .db import atomic
from .errors import InvalidStateError, NotFoundError
from .models import PLEDGE_COMPLETED, Pledge, Settlement

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class FeeSplit:
    gross_amount: Decimal
    platform_fee: Decimal
    payout_amount: Decimal


def compute_split(gross: Decimal | int | str, fee_percent: Decimal | int | str) -> FeeSplit:
    """Platform fee rounded half-up to cents; payout is the exact remainder."""
    gross = Decimal(str(gross)).quantize(CENTS, rounding=ROUND_HALF_UP)
    fee = (gross * Decimal(str(fee_percent)) / Decimal(100)).quantize(CENTS, rounding=ROUND_HALF_UP)
    return FeeSplit(gross_amount=gross, platform_fee=fee, payout_amount=gross - fee)


def _existing(db: Session, pledge_id: int) -> Settlement | None:
    return db.execute(select(Settlement).where(Settlement.pledge_id == pledge_id)).scalar_one_or_none()


def build_settlement(pledge: Pledge, fee_percent: Decimal) -> Settlement:
    split = compute_split(pledge.amount, fee_percent)
    return Settlement(
        pledge_id=pledge.id,
        campaign_id=pledge.campaign_id,
        gross_amount=split.gross_amount,
        fee_percent=Decimal(str(fee_percent)),
        platform_fee=split.platform_fee,
        payout_amount=split.payout_amount,
        status="pending",
    )


def settle_fee(db: Session, settings: Settings, pledge_id: int) -> Settlement:
    """Record the fee/payout split for a completed pledge, exactly once.

    A second call returns the row written by the first. A concurrent insert
    loses on the unique pledge_id constraint and re-reads the winner's row.
    """
    existing = _existing(db, pledge_id)
    if existing is not None:
        return existing

    pledge = db.get(Pledge, pledge_id)
    if pledge is None:
        raise NotFoundError("Pledge not found")
    if pledge.status != PLEDGE_COMPLETED:
        raise InvalidStateError(f"Only completed pledges can be settled (status is {pledge.status})")

    settlement = build_settlement(pledge, settings.platform_fee_percent)
    try:
        with atomic(db):
            db.add(settlement)
    except IntegrityError:
        existing = _existing(db, pledge_id)
        if existing is None:
            raise
        return existing

    db.refresh(settlement)
    logger.info("Settled pledge %s: fee %s payout %s", pledge_id,
                settlement.platform_fee, settlement.payout_amount)
    return settlement


def get_settlement(db: Session, pledge_id: int) -> Settlement:
    settlement = _existing(db, pledge_id)
    if settlement is None:
        raise NotFoundError("Settlement not found")
    return settlement


def campaign_totals(db: Session, campaign_id: int) -> dict[str, Any]:
    row = db.execute(
        select(
            func.count(Settlement.id),
            func.coalesce(func.sum(Settlement.gross_amount), 0),
            func.coalesce(func.sum(Settlement.platform_fee), 0),
            func.coalesce(func.sum(Settlement.payout_amount), 0),
        ).where(Settlement.campaign_id == campaign_id)
    ).one()
    count, gross, fee, payout = row
    return {
        "campaign_id": campaign_id,
        "count": int(count),
        "gross_amount": float(gross),
        "platform_fee": float(fee),
        "payout_amount": float(payout),
    }
