from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field

from ..models.user import Role

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"

class SendOTPRequest(BaseModel):
    email: EmailStr
    type: Literal["LOGIN", "SIGNUP"]
    name: Optional[str] = None

class VerifyOTPRequest(BaseModel):
    email: EmailStr
    otp: str = Field(..., min_length=6, max_length=6, description="6-digit code from the email")
    type: Literal["LOGIN", "SIGNUP"]
    # Signup only
    name: Optional[str] = Field(None, min_length=2)
    password: Optional[str] = Field(None, min_length=8)

class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: Role
    is_active: bool
    email_verified: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    class Config:
        from_attributes = True
