import asyncio
from datetime import timedelta

import aiohttp
import pytest

from bundlehub.core.config import settings
from bundlehub.core.database import utcnow
from bundlehub.core.email import BrevoMailer
from bundlehub.core.errors import (
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
from bundlehub.models.otp import OTPType, OTPVerification
from bundlehub.models.user import Role, User
from bundlehub.services import otp_service

from conftest import expire, latest_otp


def wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.mark.asyncio
async def test_issue_stores_and_emails_code(db, mailer):
    record = await otp_service.issue_otp(db, mailer, "  New@X.com ", OTPType.SIGNUP, "Asha")

    assert record.email == "new@x.com"
    assert len(record.otp) == 6 and record.otp.isdigit()
    assert not record.is_used
    remaining = record.expires_at - utcnow()
    assert timedelta(minutes=settings.OTP_EXPIRE_MINUTES - 1) < remaining <= timedelta(minutes=settings.OTP_EXPIRE_MINUTES)

    [message] = mailer.to("new@x.com")
    assert record.otp in message["text"]
    assert record.otp in message["html"]


@pytest.mark.asyncio
async def test_login_code_requires_account(db, mailer, make_user):
    with pytest.raises(NotFoundError) as exc:
        await otp_service.issue_otp(db, mailer, "ghost@x.com", OTPType.LOGIN)
    assert exc.value.code == "USER_NOT_FOUND"

    make_user(email="off@x.com", is_active=False)
    with pytest.raises(ForbiddenError):
        await otp_service.issue_otp(db, mailer, "off@x.com", OTPType.LOGIN)
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_signup_code_refused_for_existing_account(db, mailer, make_user):
    make_user(email="taken@x.com")

    with pytest.raises(ConflictError):
        await otp_service.issue_otp(db, mailer, "taken@x.com", OTPType.SIGNUP, "Taken")


@pytest.mark.asyncio
async def test_failed_email_removes_the_code(db, mailer):
    mailer.fail = True

    with pytest.raises(InternalError) as exc:
        await otp_service.issue_otp(db, mailer, "new@x.com", OTPType.SIGNUP, "Asha")

    assert exc.value.code == "EMAIL_SEND_FAILED"
    assert db.query(OTPVerification).filter_by(email="new@x.com").count() == 0


class TimingOutMailer:
    async def send(self, to, subject, html_body, text_body=None, attachments=None):
        raise asyncio.TimeoutError()


@pytest.mark.asyncio
async def test_unexpected_send_failure_removes_the_code(db):
    with pytest.raises(InternalError) as exc:
        await otp_service.issue_otp(db, TimingOutMailer(), "new@x.com", OTPType.SIGNUP, "Asha")

    assert exc.value.code == "EMAIL_SEND_FAILED"
    db.expire_all()
    assert db.query(OTPVerification).filter_by(email="new@x.com").count() == 0


@pytest.mark.asyncio
async def test_brevo_timeout_removes_the_code(db, monkeypatch):
    def post(self, url, **kwargs):
        raise asyncio.TimeoutError()

    monkeypatch.setattr(aiohttp.ClientSession, "post", post)
    mailer = BrevoMailer("api-key", "noreply@bundlehub.test", "BundleHub")

    with pytest.raises(InternalError) as exc:
        await otp_service.issue_otp(db, mailer, "new@x.com", OTPType.SIGNUP, "Asha")

    assert exc.value.code == "EMAIL_SEND_FAILED"
    db.expire_all()
    assert db.query(OTPVerification).filter_by(email="new@x.com").count() == 0


@pytest.mark.asyncio
async def test_new_code_supersedes_older_ones(db, mailer):
    first = await otp_service.issue_otp(db, mailer, "new@x.com", OTPType.SIGNUP, "Asha")
    first_code = first.otp
    second = await otp_service.issue_otp(db, mailer, "new@x.com", OTPType.SIGNUP, "Asha")

    if first_code != second.otp:
        with pytest.raises(ExpiredError):
            otp_service.verify_otp(db, "new@x.com", first_code, OTPType.SIGNUP, name="Asha", password="secret-pass")

    result = otp_service.verify_otp(db, "new@x.com", second.otp, OTPType.SIGNUP, name="Asha", password="secret-pass")
    assert result.action == otp_service.ACCOUNT_CREATED


@pytest.mark.asyncio
async def test_issue_cleans_expired_and_used_rows(db, mailer):
    old = await otp_service.issue_otp(db, mailer, "new@x.com", OTPType.SIGNUP, "Asha")
    expire(db, old, minutes=30)

    await otp_service.issue_otp(db, mailer, "new@x.com", OTPType.SIGNUP, "Asha")

    db.expire_all()
    assert db.query(OTPVerification).filter_by(email="new@x.com").count() == 1


@pytest.mark.asyncio
async def test_signup_creates_customer_and_replay_is_refused(db, mailer):
    record = await otp_service.issue_otp(db, mailer, "new@x.com", OTPType.SIGNUP, "Asha")
    code = record.otp

    result = otp_service.verify_otp(db, "NEW@x.com", code, OTPType.SIGNUP, name=" Asha ", password="secret-pass")

    assert result.action == otp_service.ACCOUNT_CREATED
    user = db.query(User).filter_by(email="new@x.com").one()
    assert user.name == "Asha"
    assert user.role == Role.CUSTOMER
    assert user.email_verified is not None

    with pytest.raises(AlreadyUsedError):
        otp_service.verify_otp(db, "new@x.com", code, OTPType.SIGNUP, name="Asha", password="secret-pass")


@pytest.mark.asyncio
async def test_expired_code_is_distinguished_from_invalid(db, mailer):
    record = await otp_service.issue_otp(db, mailer, "new@x.com", OTPType.SIGNUP, "Asha")
    code = record.otp
    expire(db, record)

    with pytest.raises(ExpiredError):
        otp_service.verify_otp(db, "new@x.com", code, OTPType.SIGNUP, name="Asha", password="secret-pass")
    with pytest.raises(InvalidCodeError):
        otp_service.verify_otp(db, "new@x.com", wrong_code(code), OTPType.SIGNUP, name="Asha", password="secret-pass")


@pytest.mark.asyncio
async def test_code_is_scoped_to_its_type(db, mailer, make_user):
    make_user(email="buyer@x.com")
    record = await otp_service.issue_otp(db, mailer, "buyer@x.com", OTPType.CHECKOUT)

    with pytest.raises(InvalidCodeError):
        otp_service.verify_otp(db, "buyer@x.com", record.otp, OTPType.LOGIN)


@pytest.mark.asyncio
async def test_wrong_codes_lock_the_live_code(db, mailer):
    record = await otp_service.issue_otp(db, mailer, "new@x.com", OTPType.SIGNUP, "Asha")
    code = record.otp

    for _ in range(settings.OTP_MAX_ATTEMPTS):
        with pytest.raises(InvalidCodeError):
            otp_service.verify_otp(db, "new@x.com", wrong_code(code), OTPType.SIGNUP, name="Asha", password="secret-pass")

    assert latest_otp(db, "new@x.com").attempts == settings.OTP_MAX_ATTEMPTS
    with pytest.raises(RateLimitExceeded) as exc:
        otp_service.verify_otp(db, "new@x.com", code, OTPType.SIGNUP, name="Asha", password="secret-pass")
    assert exc.value.code == "OTP_LOCKED"

    # A fresh code starts a fresh count
    fresh = await otp_service.issue_otp(db, mailer, "new@x.com", OTPType.SIGNUP, "Asha")
    result = otp_service.verify_otp(db, "new@x.com", fresh.otp, OTPType.SIGNUP, name="Asha", password="secret-pass")
    assert result.action == otp_service.ACCOUNT_CREATED


@pytest.mark.parametrize(
    "name, password, code",
    [(None, "secret-pass", "MISSING_NAME"), ("A", "secret-pass", "MISSING_NAME"), ("Asha", "short", "MISSING_PASSWORD")],
)
def test_signup_fields_are_checked_before_the_code(db, name, password, code):
    with pytest.raises(ValidationError) as exc:
        otp_service.verify_otp(db, "new@x.com", "123456", OTPType.SIGNUP, name=name, password=password)
    assert exc.value.code == code


@pytest.mark.asyncio
async def test_signup_conflict_releases_the_code(db, mailer, make_user):
    record = await otp_service.issue_otp(db, mailer, "race@x.com", OTPType.SIGNUP, "Asha")
    code = record.otp
    # Someone else registers the address between issue and verify
    make_user(email="race@x.com")

    with pytest.raises(ConflictError):
        otp_service.verify_otp(db, "race@x.com", code, OTPType.SIGNUP, name="Asha", password="secret-pass")

    stored = latest_otp(db, "race@x.com", OTPType.SIGNUP)
    assert stored.is_used is False
    assert stored.used_at is None


@pytest.mark.asyncio
async def test_login_updates_last_login(db, mailer, make_user):
    user = make_user(email="buyer@x.com")
    assert user.last_login_at is None
    record = await otp_service.issue_otp(db, mailer, "buyer@x.com", OTPType.LOGIN)

    result = otp_service.verify_otp(db, "buyer@x.com", record.otp, OTPType.LOGIN)

    assert result.action == otp_service.LOGIN_VERIFIED
    assert result.user.id == user.id
    db.refresh(user)
    assert user.last_login_at is not None


@pytest.mark.asyncio
async def test_checkout_code_verifies_email_only(db, mailer):
    record = await otp_service.issue_otp(db, mailer, "guest@x.com", OTPType.CHECKOUT, "Guest")

    result = otp_service.verify_otp(db, "guest@x.com", record.otp, OTPType.CHECKOUT)

    assert result.action == otp_service.EMAIL_VERIFIED
    assert result.user is None
    assert db.query(User).filter_by(email="guest@x.com").count() == 0
