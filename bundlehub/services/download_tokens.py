"""Secure download tokens.

A token is an HS256 JWT naming the user, bundle and authorizing order, and
also a row in ``download_tokens``. Both must check out for the token to be
honored: the signature proves who minted it, the row lets it be burned or
revoked before its natural expiry.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import jwt
from sqlalchemy import delete, or_, update
from sqlalchemy.orm import Session

from ..core.config import download_token_expires, settings
from ..core.database import utcnow
from ..core.errors import ForbiddenError
from ..models.download_token import DownloadToken
from ..models.order import Order, OrderItem
from ..models.user import User
from .order_state import ENTITLED_STATUSES, status_guidance

logger = logging.getLogger(__name__)

TOKEN_PURPOSE = "download"


@dataclass
class DownloadTokenClaims:
    user_id: str
    bundle_id: str
    order_id: str
    issued_at: datetime
    expires_at: datetime


def _to_naive_utc(timestamp: int) -> datetime:
    return datetime.fromtimestamp(timestamp, timezone.utc).replace(tzinfo=None)


def mask_email(email: str) -> str:
    local, _, domain = (email or "").partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def _owned_by(user: User):
    return or_(Order.user_id == user.id, Order.email == user.email)


def _entitled_order_query(db: Session, user: User, bundle_id: str):
    return db.query(Order).filter(
        _owned_by(user),
        Order.status.in_(list(ENTITLED_STATUSES)),
        Order.items.any(OrderItem.bundle_id == bundle_id),
    )


def find_entitled_order(db: Session, user: User, bundle_id: str, order_id: Optional[str] = None) -> Order:
    """Pick the order authorizing ``user`` to download ``bundle_id``.

    Uses ``order_id`` when given, else the most recently approved order.
    Raises ForbiddenError with buyer-facing guidance when there is none.
    """
    query = _entitled_order_query(db, user, bundle_id)
    if order_id:
        order = query.filter(Order.id == order_id).first()
    else:
        order = query.order_by(Order.approved_at.desc()).first()
    if order is not None:
        return order

    if order_id:
        other = db.get(Order, order_id)
        if other is not None and other.has_bundle(bundle_id) and other.user_id != user.id and other.email != user.email:
            raise ForbiddenError(
                f"This bundle was purchased by {mask_email(other.email)}; log in with that account.",
                code="WRONG_ACCOUNT",
            )

    own = (
        db.query(Order)
        .filter(_owned_by(user), Order.items.any(OrderItem.bundle_id == bundle_id))
        .order_by(Order.created_at.desc())
        .first()
    )
    if own is not None:
        raise ForbiddenError(
            f"Download not available. {status_guidance(own.status)}",
            code="ORDER_NOT_APPROVED",
            orderStatus=own.status.value,
            orderId=own.id,
        )
    raise ForbiddenError("You don't have access to this bundle. Please purchase it first.")


def cleanup_expired(db: Session, user_id: Optional[str] = None, bundle_id: Optional[str] = None) -> int:
    stmt = delete(DownloadToken).where(DownloadToken.expires_at < utcnow())
    if user_id:
        stmt = stmt.where(DownloadToken.user_id == user_id)
    if bundle_id:
        stmt = stmt.where(DownloadToken.bundle_id == bundle_id)
    return db.execute(stmt).rowcount


def _sign(user_id: str, bundle_id: str, order_id: str):
    issued = datetime.now(timezone.utc).replace(microsecond=0)
    expires = issued + download_token_expires()
    payload = {
        "userId": user_id,
        "bundleId": bundle_id,
        "orderId": order_id,
        "purpose": TOKEN_PURPOSE,
        "jti": secrets.token_hex(8),
        "iat": int(issued.timestamp()),
        "exp": int(expires.timestamp()),
    }
    token = jwt.encode(payload, settings.DOWNLOAD_TOKEN_SECRET, algorithm="HS256")
    return token, expires.replace(tzinfo=None)


def issue_token(
    db: Session,
    user_id: str,
    bundle_id: str,
    order_id: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> DownloadToken:
    """Return a usable token for (user, bundle), reusing a live one if present.

    Two concurrent calls may each mint a token; either one satisfies the same
    access check and each is burned independently.
    """
    user = db.get(User, user_id)
    order = None
    if user is not None:
        order = _entitled_order_query(db, user, bundle_id).filter(Order.id == order_id).first()
    if order is None:
        raise ForbiddenError("User does not have access to this bundle")

    removed = cleanup_expired(db, user_id, bundle_id)
    if removed:
        logger.debug("Removed %d expired download tokens for %s/%s", removed, user_id, bundle_id)

    existing = (
        db.query(DownloadToken)
        .filter(
            DownloadToken.user_id == user_id,
            DownloadToken.bundle_id == bundle_id,
            DownloadToken.is_used == False,  # noqa: E712
            DownloadToken.expires_at > utcnow(),
        )
        .order_by(DownloadToken.created_at.desc())
        .first()
    )
    if existing is not None:
        db.commit()
        return existing

    token, expires_at = _sign(user_id, bundle_id, order.id)
    record = DownloadToken(
        token=token,
        user_id=user_id,
        bundle_id=bundle_id,
        order_id=order.id,
        expires_at=expires_at,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Download token issued for user %s, bundle %s (order %s)", user_id, bundle_id, order.id)
    return record


def decode_token(token: str) -> Optional[DownloadTokenClaims]:
    """Check signature, expiry and purpose only."""
    try:
        payload = jwt.decode(
            token,
            settings.DOWNLOAD_TOKEN_SECRET,
            algorithms=["HS256"],
            options={"require": ["exp", "iat"]},
        )
    except jwt.PyJWTError as e:
        logger.debug("Download token rejected: %s", e)
        return None
    if payload.get("purpose") != TOKEN_PURPOSE:
        return None
    try:
        return DownloadTokenClaims(
            user_id=str(payload["userId"]),
            bundle_id=str(payload["bundleId"]),
            order_id=str(payload["orderId"]),
            issued_at=_to_naive_utc(payload["iat"]),
            expires_at=_to_naive_utc(payload["exp"]),
        )
    except (KeyError, TypeError, ValueError, OverflowError):
        return None


def verify_token(db: Session, token: str) -> Optional[DownloadTokenClaims]:
    """Return the claims only if the signature and the stored row are both valid."""
    if not token:
        return None
    claims = decode_token(token)
    if claims is None:
        return None
    record = db.query(DownloadToken).filter(DownloadToken.token == token).first()
    if record is None or record.is_used or record.expires_at <= utcnow():
        logger.warning("Download token with valid signature refused for bundle %s", claims.bundle_id)
        return None
    return claims


def mark_used(db: Session, token: str) -> bool:
    """Burn a token. False when it was already burned. The caller commits."""
    result = db.execute(
        update(DownloadToken)
        .where(DownloadToken.token == token, DownloadToken.is_used == False)  # noqa: E712
        .values(is_used=True, used_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
