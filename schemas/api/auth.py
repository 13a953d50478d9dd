"""Pydantic schemas for the authentication API."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field

AuthErrorCode = Literal[
    "auth.email_taken",
    "auth.invalid_password",
    "auth.invalid_credentials",
    "auth.invalid_payload",
    "auth.account_banned",
    "auth.account_inactive",
    "auth.device_limit",
    "auth.rate_limited",
    "auth.token_expired",
    "auth.token_invalid",
    "auth.user_not_found",
]


class SignupRequest(BaseModel):
    email: EmailStr = Field(..., description="Account email address.")
    password: str = Field(..., description="Password (8+ chars with upper, lower, and a digit).")
    phone: Optional[str] = Field(default=None, max_length=32, description="Optional phone number for OTP.")
    deviceFingerprint: Optional[str] = Field(default=None, max_length=512)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)
    deviceFingerprint: Optional[str] = Field(default=None, max_length=512)


class RefreshRequest(BaseModel):
    refreshToken: Optional[str] = None


class LogoutRequest(BaseModel):
    refreshToken: Optional[str] = None


class SendOtpRequest(BaseModel):
    phone: str = Field(..., min_length=10, max_length=32)


class VerifyOtpRequest(BaseModel):
    phone: str = Field(..., min_length=10, max_length=32)
    code: str = Field(..., min_length=6, max_length=6)


class UserProfileSchema(BaseModel):
    id: str
    email: str
    phone: Optional[str] = None
    phoneVerified: bool = False
    role: str = "user"
    trialStart: Optional[str] = None
    trialEnd: Optional[str] = None
    subscriptionPlan: Optional[str] = None
    subscriptionStatus: Optional[str] = None
    createdAt: Optional[str] = None


class TokenPairSchema(BaseModel):
    accessToken: str
    refreshToken: str
    expiresIn: int


class AuthResponse(TokenPairSchema):
    user: UserProfileSchema


class OtpSendResponse(BaseModel):
    sent: bool = True
    expiresIn: int
    code: Optional[str] = Field(default=None, description="Echoed only while SMS delivery is mocked.")


class MessageResponse(BaseModel):
    success: bool = True
    message: str
