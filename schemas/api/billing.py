"""Billing API schemas."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from core.plan_constants import PlanTier


class CheckoutSessionRequest(BaseModel):
    plan: str = Field(..., description="Target plan tier: basic, pro or enterprise.")
    successUrl: Optional[str] = Field(default=None, description="Redirect after a completed checkout.")
    cancelUrl: Optional[str] = Field(default=None, description="Redirect after an abandoned checkout.")


class CheckoutSessionResponse(BaseModel):
    sessionId: str
    url: Optional[str] = None


class PlanSchema(BaseModel):
    id: PlanTier
    name: str
    price: float
    currency: str
    interval: str
    features: List[str]
    popular: bool = False


class PlanListResponse(BaseModel):
    plans: List[PlanSchema]


class SubscriptionSchema(BaseModel):
    id: str
    userId: str
    stripeSubscriptionId: str
    stripeCustomerId: Optional[str] = None
    stripePriceId: Optional[str] = None
    plan: str
    status: str
    currentPeriodStart: Optional[str] = None
    currentPeriodEnd: Optional[str] = None
    cancelAtPeriodEnd: bool = False
    createdAt: Optional[str] = None


class CancelSubscriptionResponse(BaseModel):
    success: bool = True
    message: str
    subscription: SubscriptionSchema


class TrialStatusResponse(BaseModel):
    isActive: bool
    startDate: Optional[str] = None
    endDate: Optional[str] = None
    hoursRemaining: int
    hasSubscription: bool


class WebhookAckResponse(BaseModel):
    received: bool = True
    duplicate: bool = False
