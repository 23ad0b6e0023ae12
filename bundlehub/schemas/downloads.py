from datetime import datetime
from typing import Optional

from pydantic import BaseModel

class DownloadTokenRequest(BaseModel):
    orderId: Optional[str] = None

class DownloadTokenResponse(BaseModel):
    token: str
    downloadUrl: str
    expiresAt: datetime
    expiresIn: int
    bundleName: str
    orderId: str
    message: str

class DownloadLinkResponse(BaseModel):
    downloadUrl: str
    expiresIn: Optional[int] = None
    bundleName: str
    orderId: Optional[str] = None
    message: str
