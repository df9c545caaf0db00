from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class RewardProfile(BaseModel):
    account_id: str
    email: Optional[str] = None
    referral_code: str
    referred_by: Optional[str] = None
    has_posted_first_item: bool = False
    has_made_first_sale: bool = False
    referral_bonus_paid_out: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SignupRequest(BaseModel):
    uid: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    referral_code: Optional[str] = Field(default=None, alias="referralCode")

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {"uid": "student-42", "email": "student42@vitap.edu.in", "referralCode": "K7Q2XW9M"}
    })


class SignupResult(BaseModel):
    success: bool = True
    created: bool
    profile: RewardProfile
    rewards: list[dict] = Field(default_factory=list)
