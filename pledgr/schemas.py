from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Category = Literal["visual", "music", "writing", "film", "other"]
PledgeStatus = Literal["active", "completed", "cancelled"]

Money = Annotated[Decimal, Field(gt=0, max_digits=10, decimal_places=2)]


class _CamelIn(BaseModel):
    # clients send camelCase (campaignId, levelId, orderId)
    model_config = ConfigDict(populate_by_name=True)


# ---------- Auth ----------
class RegisterIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(min_length=1)


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class SocialIn(BaseModel):
    twitter: Optional[str] = None
    instagram: Optional[str] = None
    youtube: Optional[str] = None


class ProfileIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    bio: Optional[str] = None
    website: Optional[str] = Field(default=None, max_length=500)
    social: Optional[SocialIn] = None


class UserOut(BaseModel):
    id: int
    name: str
    email: EmailStr
    avatar: Optional[str] = None
    is_creator: bool = False
    bio: Optional[str] = None
    website: Optional[str] = None
    social_twitter: Optional[str] = None
    social_instagram: Optional[str] = None
    social_youtube: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AuthOut(BaseModel):
    token: str
    user: UserOut


# ---------- Campaigns ----------
class CampaignCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    title: str = Field(min_length=1, max_length=500)
    category: Category
    description: str = Field(min_length=1)
    goal: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    image: Optional[str] = None


class CampaignUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    category: Optional[Category] = None
    description: Optional[str] = Field(default=None, min_length=1)
    goal: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    image: Optional[str] = None


class PledgeLevelCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    amount: Money
    description: str = ""
    benefits: List[str] = Field(default_factory=list)


class PledgeLevelOut(BaseModel):
    id: int
    campaign_id: int
    name: str
    amount: float
    description: Optional[str] = None
    benefits: List[str] = Field(default_factory=list)
    supporters: int = 0


class CampaignOut(BaseModel):
    id: int
    user_id: int
    creator_name: Optional[str] = None
    name: str
    title: str
    category: str
    description: str
    image: Optional[str] = None
    goal: float
    pledged: float = 0.0
    supporters: int = 0
    days_remaining: int = 0
    created_at: Optional[datetime] = None


class CampaignDetailOut(CampaignOut):
    levels: List[PledgeLevelOut] = Field(default_factory=list)


class RevenueOut(BaseModel):
    campaign_id: int
    count: int
    gross_amount: float
    platform_fee: float
    payout_amount: float


# ---------- Pledges ----------
class PledgeCreate(_CamelIn):
    campaign_id: int = Field(alias="campaignId")
    level_id: Optional[int] = Field(default=None, alias="levelId")
    amount: Money
    order_id: Optional[str] = Field(default=None, alias="orderId", min_length=1)


class CaptureIn(_CamelIn):
    order_id: str = Field(alias="orderId", min_length=1)


class PledgeOut(BaseModel):
    id: int
    user_id: int
    campaign_id: int
    campaign_name: Optional[str] = None
    level_id: Optional[int] = None
    amount: float
    status: PledgeStatus
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SettlementOut(BaseModel):
    pledge_id: int
    campaign_id: int
    gross_amount: float
    fee_percent: float
    platform_fee: float
    payout_amount: float
    status: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
