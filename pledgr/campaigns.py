# campaigns.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .auth import get_settings, require_auth
from .config import Settings
from .db import atomic, get_db
from .errors import AuthorizationError, NotFoundError, ValidationError
from .models import CATEGORIES, LIVE_PLEDGE_STATUSES, Campaign, Pledge, PledgeLevel, User
from .schemas import (
    CampaignCreate, CampaignDetailOut, CampaignOut, CampaignUpdate,
    PledgeLevelCreate, PledgeLevelOut, RevenueOut,
)
from .settlement import CENTS, campaign_totals

logger = logging.getLogger(__name__)

# ---------- Helpers ----------

def _ensure_category(val: Optional[str]) -> str:
    v = (val or "").lower().strip()
    if v not in CATEGORIES:
        raise ValidationError(f"Invalid category '{val}'. Allowed: {', '.join(CATEGORIES)}.")
    return v


def _required(**fields: Optional[str]) -> None:
    missing = [k for k, v in fields.items() if not (v or "").strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def parse_money(val, field: str, allow_zero: bool) -> Decimal:
    try:
        amount = Decimal(str(val)).quantize(CENTS)
    except ArithmeticError as e:
        raise ValidationError(f"{field} must be a number") from e
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{field} must be {'>= 0' if allow_zero else '> 0'}")
    return amount


def _live_totals():
    """Per-campaign pledged sum and supporter (pledge) count over live pledges."""
    return (
        select(
            Pledge.campaign_id.label("campaign_id"),
            func.coalesce(func.sum(Pledge.amount), 0).label("pledged"),
            func.count(Pledge.id).label("supporters"),
        )
        .where(Pledge.status.in_(LIVE_PLEDGE_STATUSES))
        .group_by(Pledge.campaign_id)
        .subquery()
    )


def days_remaining(campaign: Campaign, now: Optional[datetime] = None) -> int:
    if campaign.created_at is None:
        return campaign.duration_days
    now = now or datetime.now(timezone.utc)
    created = campaign.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return max(0, campaign.duration_days - (now - created).days)


def _to_out(campaign: Campaign, creator_name: Optional[str], pledged, supporters) -> CampaignOut:
    return CampaignOut(
        id=campaign.id,
        user_id=campaign.user_id,
        creator_name=creator_name,
        name=campaign.name,
        title=campaign.title,
        category=campaign.category,
        description=campaign.description,
        image=campaign.image,
        goal=float(campaign.goal or 0),
        pledged=float(pledged or 0),
        supporters=int(supporters or 0),
        days_remaining=days_remaining(campaign),
        created_at=campaign.created_at,
    )


def _owned_campaign(db: Session, campaign_id: int, requesting_user_id: int) -> Campaign:
    campaign = db.get(Campaign, campaign_id)
    if campaign is None:
        raise NotFoundError("Campaign not found")
    if campaign.user_id != requesting_user_id:
        raise AuthorizationError("Only the campaign owner can do this")
    return campaign


# ---------- Service ----------

def create_campaign(db: Session, owner_id: int, name: str, title: str, category: str,
                    description: str, goal=0, image: Optional[str] = None,
                    duration_days: int = 30) -> Campaign:
    """Create a campaign and promote its owner to creator in one transaction."""
    _required(name=name, title=title, category=category, description=description)
    category = _ensure_category(category)
    goal = parse_money(goal, "goal", allow_zero=True)

    owner = db.get(User, owner_id)
    if owner is None:
        raise NotFoundError("User not found")

    campaign = Campaign(
        user_id=owner_id,
        name=name.strip(),
        title=title.strip(),
        category=category,
        description=description.strip(),
        image=image,
        goal=goal,
        duration_days=duration_days,
    )
    with atomic(db):
        db.add(campaign)
        owner.is_creator = True
    db.refresh(campaign)
    logger.info("User %s created campaign %s (%s)", owner_id, campaign.id, category)
    return campaign


def update_campaign(db: Session, campaign_id: int, requesting_user_id: int, **fields) -> Campaign:
    campaign = _owned_campaign(db, campaign_id, requesting_user_id)
    changes = {k: v for k, v in fields.items() if v is not None}
    if "category" in changes:
        changes["category"] = _ensure_category(changes["category"])
    if "goal" in changes:
        changes["goal"] = parse_money(changes["goal"], "goal", allow_zero=True)
    for key in ("title", "description"):
        if key in changes:
            _required(**{key: changes[key]})
            changes[key] = changes[key].strip()
    with atomic(db):
        for key, value in changes.items():
            setattr(campaign, key, value)
    db.refresh(campaign)
    return campaign


def aggregate_for_campaign(db: Session, campaign_id: int) -> dict:
    """Pledged total and supporter count over active/completed pledges.

    Every live pledge counts as one supporter, so a user pledging twice
    counts twice, the same as ``level_supporters``.
    """
    pledged, supporters = db.execute(
        select(
            func.coalesce(func.sum(Pledge.amount), 0),
            func.count(Pledge.id),
        ).where(Pledge.campaign_id == campaign_id, Pledge.status.in_(LIVE_PLEDGE_STATUSES))
    ).one()
    return {"pledged": Decimal(str(pledged or 0)).quantize(CENTS), "supporters": int(supporters or 0)}


def list_campaigns(db: Session, category: Optional[str] = None) -> List[CampaignOut]:
    totals = _live_totals()
    stmt = (
        select(Campaign, User.name, totals.c.pledged, totals.c.supporters)
        .join(User, Campaign.user_id == User.id)
        .outerjoin(totals, totals.c.campaign_id == Campaign.id)
        .order_by(Campaign.id.desc())
    )
    if category and category.lower().strip() != "all":
        stmt = stmt.where(Campaign.category == _ensure_category(category))
    return [_to_out(c, creator, pledged, supporters) for c, creator, pledged, supporters in db.execute(stmt)]


def level_supporters(db: Session, campaign_id: int) -> dict:
    rows = db.execute(
        select(Pledge.level_id, func.count(Pledge.id))
        .where(Pledge.campaign_id == campaign_id,
               Pledge.level_id.is_not(None),
               Pledge.status.in_(LIVE_PLEDGE_STATUSES))
        .group_by(Pledge.level_id)
    ).all()
    return {level_id: int(n) for level_id, n in rows}


def _level_out(level: PledgeLevel, supporters: int = 0) -> PledgeLevelOut:
    return PledgeLevelOut(
        id=level.id,
        campaign_id=level.campaign_id,
        name=level.name,
        amount=float(level.amount),
        description=level.description,
        benefits=list(level.benefits or []),
        supporters=supporters,
    )


def get_campaign(db: Session, campaign_id: int) -> CampaignDetailOut:
    campaign = db.get(Campaign, campaign_id)
    if campaign is None:
        raise NotFoundError("Campaign not found")
    agg = aggregate_for_campaign(db, campaign_id)
    counts = level_supporters(db, campaign_id)
    base = _to_out(campaign, campaign.owner.name if campaign.owner else None, agg["pledged"], agg["supporters"])
    return CampaignDetailOut(
        **base.model_dump(),
        levels=[_level_out(lv, counts.get(lv.id, 0)) for lv in campaign.levels],
    )


def add_pledge_level(db: Session, campaign_id: int, requesting_user_id: int, name: str, amount,
                     description: str = "", benefits: Optional[List[str]] = None) -> PledgeLevel:
    _required(name=name)
    amount = parse_money(amount, "amount", allow_zero=False)
    campaign = _owned_campaign(db, campaign_id, requesting_user_id)
    level = PledgeLevel(
        campaign_id=campaign.id,
        name=name.strip(),
        amount=amount,
        description=description or "",
        benefits=[b for b in (benefits or []) if b and b.strip()],
    )
    with atomic(db):
        db.add(level)
    db.refresh(level)
    logger.info("Campaign %s: added pledge level %s at %s", campaign_id, level.id, amount)
    return level


def revenue_summary(db: Session, campaign_id: int, requesting_user_id: int) -> dict:
    _owned_campaign(db, campaign_id, requesting_user_id)
    return campaign_totals(db, campaign_id)


# ---------- Routes ----------

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


@router.get("", response_model=List[CampaignOut])
def list_campaigns_route(
    category: Optional[str] = Query(None, description="visual|music|writing|film|other|all"),
    db: Session = Depends(get_db),
):
    return list_campaigns(db, category)


@router.post("")
def create_campaign_route(payload: CampaignCreate, user: User = Depends(require_auth),
                          db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    campaign = create_campaign(
        db, user.id, payload.name, payload.title, payload.category,
        payload.description, payload.goal, payload.image,
        duration_days=settings.campaign_duration_days,
    )
    return {"message": "Campaign created successfully", "campaignId": campaign.id}


@router.get("/{campaign_id}", response_model=CampaignDetailOut)
def get_campaign_route(campaign_id: int, db: Session = Depends(get_db)):
    return get_campaign(db, campaign_id)


@router.patch("/{campaign_id}", response_model=CampaignDetailOut)
def update_campaign_route(campaign_id: int, payload: CampaignUpdate,
                          user: User = Depends(require_auth), db: Session = Depends(get_db)):
    update_campaign(db, campaign_id, user.id, **payload.model_dump())
    return get_campaign(db, campaign_id)


@router.post("/{campaign_id}/levels")
def add_level_route(campaign_id: int, payload: PledgeLevelCreate,
                    user: User = Depends(require_auth), db: Session = Depends(get_db)):
    level = add_pledge_level(db, campaign_id, user.id, payload.name, payload.amount,
                             payload.description, payload.benefits)
    return {"message": "Pledge level created successfully", "levelId": level.id}


@router.get("/{campaign_id}/revenue", response_model=RevenueOut)
def revenue_route(campaign_id: int, user: User = Depends(require_auth), db: Session = Depends(get_db)):
    return revenue_summary(db, campaign_id, user.id)
