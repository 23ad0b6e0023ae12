"""One-time email codes for login, signup and checkout email verification."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import otp_expires, settings
from ..core.database import utcnow
from ..core.email import EmailDeliveryError, build_otp_email, generate_otp
from ..core.errors import (
    AlreadyUsedError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InternalError,
    InvalidCodeError,
    NotFoundError,
    RateLimitExceeded,
    ValidationError,
)
from ..core.security import get_password_hash
from ..models.otp import OTPType, OTPVerification
from ..models.user import Role, User

logger = logging.getLogger(__name__)

ACCOUNT_CREATED = "ACCOUNT_CREATED"
LOGIN_VERIFIED = "LOGIN_VERIFIED"
EMAIL_VERIFIED = "EMAIL_VERIFIED"


@dataclass
class OTPVerificationResult:
    email: str
    type: OTPType
    action: str
    user: Optional[User] = None


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _scope(email: str, otp_type: OTPType, order_id: Optional[str]):
    """Rows a code for (email, type, order) competes with."""
    return (
        OTPVerification.email == email,
        OTPVerification.type == otp_type,
        OTPVerification.order_id.is_(None) if order_id is None else OTPVerification.order_id == order_id,
    )


def _live_filter(email: str, otp_type: OTPType, now, order_id: Optional[str] = None):
    return (
        *_scope(email, otp_type, order_id),
        OTPVerification.is_used == False,  # noqa: E712
        OTPVerification.expires_at > now,
    )


def check_issue_preconditions(db: Session, email: str, otp_type: OTPType):
    user = db.query(User).filter(User.email == email).first()
    if otp_type == OTPType.LOGIN:
        if not user:
            raise NotFoundError(
                "No account found with this email address. Please sign up first.", code="USER_NOT_FOUND"
            )
        if not user.is_active:
            raise ForbiddenError("Account is deactivated. Please contact support.", code="ACCOUNT_DEACTIVATED")
    elif otp_type == OTPType.SIGNUP and user:
        raise ConflictError(
            "An account with this email already exists. Please login instead.", code="USER_EXISTS"
        )


async def issue_otp(
    db: Session,
    mailer,
    email: str,
    otp_type: OTPType,
    name: Optional[str] = None,
    order_id: Optional[str] = None,
) -> OTPVerification:
    """Create, store and email a fresh code for (email, type).

    CHECKOUT codes pass ``order_id`` and are bound to that order. Expired and
    used rows in the same scope are deleted, and any still-live code is
    expired so only the new one can be verified. If the email cannot be sent
    the new row is removed again and ``EMAIL_SEND_FAILED`` is raised.
    """
    email = normalize_email(email)
    check_issue_preconditions(db, email, otp_type)

    now = utcnow()
    try:
        db.execute(
            delete(OTPVerification).where(
                *_scope(email, otp_type, order_id),
                or_(OTPVerification.expires_at < now, OTPVerification.is_used == True),  # noqa: E712
            )
        )
        db.execute(
            update(OTPVerification)
            .where(*_live_filter(email, otp_type, now, order_id))
            .values(expires_at=now)
        )
        record = OTPVerification(
            email=email,
            otp=generate_otp(),
            type=otp_type,
            order_id=order_id,
            expires_at=now + otp_expires(),
            is_used=False,
            attempts=0,
        )
        db.add(record)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    record_id = record.id
    subject, html_body, text_body = build_otp_email(record.otp, otp_type.value.lower(), name)
    try:
        await mailer.send(email, subject, html_body, text_body)
    except Exception as e:
        # A code nobody received must not stay verifiable
        if isinstance(e, EmailDeliveryError):
            logger.error("Failed to send OTP email to %s: %s", email, e)
        else:
            logger.exception("Unexpected failure sending OTP email to %s", email)
        db.rollback()
        db.execute(delete(OTPVerification).where(OTPVerification.id == record_id))
        db.commit()
        raise InternalError("Failed to send OTP email. Please try again.", code="EMAIL_SEND_FAILED") from e

    logger.info("OTP issued for %s (%s)", email, otp_type.value)
    return record


def _validate_signup_fields(name: Optional[str], password: Optional[str]):
    if not name or len(name.strip()) < 2:
        raise ValidationError("Name is required for signup", code="MISSING_NAME")
    if not password or len(password) < 8:
        raise ValidationError("Password must be at least 8 characters", code="MISSING_PASSWORD")


def _register_miss(db: Session, email: str, otp_type: OTPType, code: str, now, order_id: Optional[str] = None):
    """Count a failed attempt against the live code and raise the matching error."""
    db.execute(
        update(OTPVerification)
        .where(*_live_filter(email, otp_type, now, order_id))
        .values(attempts=OTPVerification.attempts + 1)
    )
    db.commit()

    previous = (
        db.query(OTPVerification)
        .filter(*_scope(email, otp_type, order_id), OTPVerification.otp == code)
        .order_by(OTPVerification.created_at.desc())
        .first()
    )
    if previous is not None:
        if previous.is_used:
            raise AlreadyUsedError()
        if previous.expires_at <= now:
            raise ExpiredError()
    raise InvalidCodeError()


def verify_otp(
    db: Session,
    email: str,
    code: str,
    otp_type: OTPType,
    name: Optional[str] = None,
    password: Optional[str] = None,
    order_id: Optional[str] = None,
) -> OTPVerificationResult:
    email = normalize_email(email)
    code = (code or "").strip()
    if otp_type == OTPType.SIGNUP:
        _validate_signup_fields(name, password)

    now = utcnow()
    locked = (
        db.query(OTPVerification)
        .filter(*_live_filter(email, otp_type, now, order_id), OTPVerification.attempts >= settings.OTP_MAX_ATTEMPTS)
        .first()
    )
    if locked is not None:
        raise RateLimitExceeded("Too many invalid attempts. Please request a new code.", code="OTP_LOCKED")

    record = (
        db.query(OTPVerification)
        .filter(*_live_filter(email, otp_type, now, order_id), OTPVerification.otp == code)
        .first()
    )
    if record is None:
        _register_miss(db, email, otp_type, code, now, order_id)

    record.is_used = True
    record.used_at = now
    db.commit()

    if otp_type == OTPType.SIGNUP:
        return _create_account(db, record, email, name.strip(), password)
    if otp_type == OTPType.LOGIN:
        return _complete_login(db, email)
    return OTPVerificationResult(email=email, type=otp_type, action=EMAIL_VERIFIED)


def _create_account(db: Session, record: OTPVerification, email: str, name: str, password: str):
    try:
        user = User(
            email=email,
            name=name,
            password_hash=get_password_hash(password),
            role=Role.CUSTOMER,
            is_active=True,
            email_verified=utcnow(),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("User creation failed for %s, releasing OTP: %s", email, e)
        # Release the code so the buyer can retry with it
        record.is_used = False
        record.used_at = None
        db.commit()
        if isinstance(e, IntegrityError):
            raise ConflictError(
                "An account with this email already exists. Please login instead.", code="USER_EXISTS"
            )
        raise InternalError("Database error occurred. Please try again.", code="DATABASE_ERROR")

    logger.info("Account created for %s", email)
    return OTPVerificationResult(email=email, type=OTPType.SIGNUP, action=ACCOUNT_CREATED, user=user)


def _complete_login(db: Session, email: str):
    user = db.query(User).filter(User.email == email).first()
    if not user:
        raise NotFoundError("User account not found.", code="USER_NOT_FOUND")
    if not user.is_active:
        raise ForbiddenError("Account is deactivated. Please contact support.", code="ACCOUNT_DEACTIVATED")
    user.last_login_at = utcnow()
    db.commit()
    return OTPVerificationResult(email=email, type=OTPType.LOGIN, action=LOGIN_VERIFIED, user=user)
