from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.context import get_blob_store
from ..core.database import get_db, utcnow
from ..core.errors import NotFoundError, ValidationError
from ..core.rate_limit import client_ip, rate_limited
from ..core.security import get_current_user
from ..models.bundle import Bundle
from ..models.user import User
from ..schemas.downloads import DownloadLinkResponse, DownloadTokenRequest, DownloadTokenResponse
from ..services import download_gateway, download_tokens

router = APIRouter(prefix="/download", tags=["download"])


@router.post(
    "/token/{bundle_id}",
    response_model=DownloadTokenResponse,
    dependencies=[Depends(rate_limited("general"))],
)
def create_download_token(
    bundle_id: str,
    request: Request,
    payload: Optional[DownloadTokenRequest] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Issue a 24-hour, single-use download token for a purchased bundle."""
    bundle = db.get(Bundle, bundle_id)
    if not bundle or not bundle.is_active:
        raise NotFoundError("Bundle not found or inactive")
    if not bundle.download_url:
        raise ValidationError("Bundle has no downloadable file")

    order = download_tokens.find_entitled_order(db, user, bundle_id, payload.orderId if payload else None)
    record = download_tokens.issue_token(
        db,
        user.id,
        bundle_id,
        order.id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", "unknown"),
    )
    expires_in = max(0, int((record.expires_at - utcnow()).total_seconds()))
    return DownloadTokenResponse(
        token=record.token,
        downloadUrl=f"{settings.PUBLIC_BASE_URL}/download/secure/{bundle_id}?token={record.token}",
        expiresAt=record.expires_at,
        expiresIn=expires_in,
        bundleName=bundle.name,
        orderId=record.order_id,
        message=f"Secure download token generated. Token expires in {settings.DOWNLOAD_TOKEN_TTL_HOURS} hours.",
    )


@router.get("/secure/{bundle_id}")
def secure_download(
    bundle_id: str,
    request: Request,
    token: Optional[str] = Query(None),
    orderId: Optional[str] = Query(None),
    email: Optional[str] = Query(None),
    format: Optional[str] = Query(None, description="'json' for a JSON body instead of a redirect"),
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
):
    """Redirect to (or return) a retrieval URL for a token or legacy order credentials."""
    if token:
        credentials = download_gateway.TokenCredentials(token=token)
    elif orderId and email:
        credentials = download_gateway.OrderCredentials(order_id=orderId, email=email)
    else:
        credentials = None

    grant = download_gateway.resolve(
        db,
        blob_store,
        bundle_id,
        credentials,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", "unknown"),
    )

    if format == "json":
        if grant.is_presigned:
            message = f"Download link generated successfully. Link expires in {grant.expires_in // 60} minutes."
        else:
            message = "Direct download link provided."
        return DownloadLinkResponse(
            downloadUrl=grant.url,
            expiresIn=grant.expires_in,
            bundleName=grant.bundle_name,
            orderId=grant.order_id,
            message=message,
        )
    return RedirectResponse(grant.url)
