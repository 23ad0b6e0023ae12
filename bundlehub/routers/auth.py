from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from ..core.config import settings, access_token_expires
from ..core.context import get_mailer
from ..core.database import get_db, utcnow
from ..core.errors import ForbiddenError, UnauthorizedError
from ..core.rate_limit import rate_limited
from ..core.security import create_user_token, get_current_user, verify_password
from ..models.otp import OTPType
from ..models.user import User
from ..schemas.auth import LoginRequest, SendOTPRequest, TokenResponse, UserResponse, VerifyOTPRequest
from ..services import otp_service

router = APIRouter(prefix="/auth", tags=["auth"])

otp_rate_limit = rate_limited(
    "auth", "Too many OTP requests. Please wait 15 minutes before trying again."
)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    """Password login, used by administrators."""
    user = db.query(User).filter(User.email == otp_service.normalize_email(payload.email)).first()
    if not user or not user.password_hash or not verify_password(payload.password, user.password_hash):
        raise UnauthorizedError("Invalid credentials")
    if not user.is_active:
        raise ForbiddenError("Account is deactivated. Please contact support.", code="ACCOUNT_DEACTIVATED")
    user.last_login_at = utcnow()
    db.commit()
    return TokenResponse(access_token=create_user_token(user, access_token_expires()))


@router.post("/send-otp", dependencies=[Depends(otp_rate_limit)])
async def send_otp(payload: SendOTPRequest, db: Session = Depends(get_db), mailer=Depends(get_mailer)):
    """Send a 6-digit login or signup code to the email."""
    otp_type = OTPType(payload.type)
    record = await otp_service.issue_otp(db, mailer, payload.email, otp_type, payload.name)
    return {
        "success": True,
        "message": f"OTP sent to {record.email}. Please check your email and enter the 6-digit code.",
        "data": {
            "email": record.email,
            "type": otp_type.value,
            "expiresIn": settings.OTP_EXPIRE_MINUTES,
        },
    }


@router.post("/verify-otp")
def verify_otp(payload: VerifyOTPRequest, db: Session = Depends(get_db)):
    """Verify a code; signup creates the account, login returns a bearer token."""
    result = otp_service.verify_otp(
        db,
        payload.email,
        payload.otp,
        OTPType(payload.type),
        name=payload.name,
        password=payload.password,
    )
    user = result.user
    data = {
        "userId": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role.value,
        "action": result.action,
    }
    if result.type == OTPType.SIGNUP:
        return {"success": True, "message": "Account created successfully! You can now login.", "data": data}

    data["accessToken"] = create_user_token(user, access_token_expires())
    data["tokenType"] = "bearer"
    return {"success": True, "message": "OTP verified successfully!", "data": data}


@router.get("/me", response_model=UserResponse)
def me(user: User = Depends(get_current_user)):
    return user
