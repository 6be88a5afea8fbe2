from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List
from uuid import UUID
from datetime import datetime


# User schemas
class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    name: Optional[str] = Field(None, max_length=255)
    username: Optional[str] = Field(None, min_length=2, max_length=50)

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        if len(v) < 8:
            raise ValueError('Password must be at least 8 characters')
        return v


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserCompanyOut(BaseModel):
    company_id: UUID
    company_title: str
    company_slug: str
    role: str
    joined_at: Optional[datetime] = None


class UserOut(BaseModel):
    id: UUID
    email: EmailStr
    name: Optional[str] = None
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserWithCompaniesOut(UserOut):
    companies: List[UserCompanyOut] = []


class AuthResponse(BaseModel):
    user: UserOut
    message: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    username: Optional[str] = Field(None, max_length=50)


# Password change schema (for authenticated users)
class PasswordChangeRequest(BaseModel):
    """Mismatch and length are checked by the service so they surface as 400."""
    current_password: str
    new_password: str
    confirm_password: str


# Email verification schemas
class EmailVerificationConfirm(BaseModel):
    token: str


# Password reset schemas
class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirm(BaseModel):
    token: str
    new_password: str = Field(..., min_length=8)


class MessageResponse(BaseModel):
    message: str


class OAuthUrlResponse(BaseModel):
    url: str


class SessionData(BaseModel):
    """Decoded session token."""
    id: UUID
    userId: UUID
    email: str
    name: Optional[str] = None
