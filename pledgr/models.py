from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, JSON,
    Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import expression, func

from .db import Base

CATEGORIES = ("visual", "music", "writing", "film", "other")

PLEDGE_ACTIVE = "active"
PLEDGE_COMPLETED = "completed"
PLEDGE_CANCELLED = "cancelled"
LIVE_PLEDGE_STATUSES = (PLEDGE_ACTIVE, PLEDGE_COMPLETED)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)  # stored lower-cased
    password_hash = Column(String(255), nullable=False)                    # bcrypt
    avatar = Column(Text)
    is_creator = Column(Boolean, nullable=False, default=False, server_default=expression.false())
    bio = Column(Text)
    website = Column(String(500))
    social_twitter = Column(String(255))
    social_instagram = Column(String(255))
    social_youtube = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    campaigns = relationship("Campaign", back_populates="owner")


class Campaign(Base):
    __tablename__ = "campaigns"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    title = Column(String(500), nullable=False)
    category = Column(String(50), index=True, nullable=False)   # visual | music | writing | film | other
    description = Column(Text, nullable=False)
    image = Column(Text)
    goal = Column(Numeric(10, 2), nullable=False, default=0)
    duration_days = Column(Integer, nullable=False, default=30)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (CheckConstraint("goal >= 0", name="ck_campaign_goal"),)

    owner = relationship("User", back_populates="campaigns")
    levels = relationship("PledgeLevel", back_populates="campaign", order_by="PledgeLevel.amount")


class PledgeLevel(Base):
    __tablename__ = "pledge_levels"
    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    description = Column(Text)
    benefits = Column(JSON, nullable=False, default=list)       # ordered list of strings
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (CheckConstraint("amount > 0", name="ck_level_amount"),)

    campaign = relationship("Campaign", back_populates="levels")


class Pledge(Base):
    __tablename__ = "pledges"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), index=True, nullable=False)
    level_id = Column(Integer, ForeignKey("pledge_levels.id"), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), index=True, nullable=False, default=PLEDGE_ACTIVE)  # active | completed | cancelled
    payment_method = Column(String(100))
    transaction_id = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_pledge_amount"),
        # one pledge per captured payment; NULLs (uncaptured) never collide
        UniqueConstraint("payment_method", "transaction_id", name="uq_pledge_payment"),
    )

    campaign = relationship("Campaign")
    level = relationship("PledgeLevel")


class Settlement(Base):
    __tablename__ = "settlements"
    id = Column(Integer, primary_key=True, index=True)
    pledge_id = Column(Integer, ForeignKey("pledges.id"), unique=True, nullable=False)  # one per pledge
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), index=True, nullable=False)
    gross_amount = Column(Numeric(10, 2), nullable=False)
    fee_percent = Column(Numeric(5, 2), nullable=False)
    platform_fee = Column(Numeric(10, 2), nullable=False)
    payout_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), index=True, nullable=False, default="pending")  # pending | paid
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class LoginAttempt(Base):
    __tablename__ = "login_attempts"
    identifier = Column(String(255), primary_key=True)   # lower-cased email
    failures = Column(Integer, nullable=False, default=0)
    window_started_at = Column(DateTime(timezone=True), nullable=False)
