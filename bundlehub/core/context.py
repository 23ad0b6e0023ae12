from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import Request

from .config import settings
from .database import SessionLocal, build_session_factory, engine as default_engine
from .email import BrevoMailer
from .rate_limit import RateLimiter
from .storage import S3BlobStore


@dataclass
class AppContext:
    """Long-lived clients shared by request handlers and background jobs.

    Built once per application and stored on ``app.state.context``.
    """

    engine: Any
    session_factory: Any
    mailer: Any
    blob_store: Any
    rate_limiters: Dict[str, RateLimiter] = field(default_factory=dict)


def default_rate_limiters() -> Dict[str, RateLimiter]:
    return {
        "auth": RateLimiter.parse(settings.RATE_LIMIT_AUTH),
        "general": RateLimiter.parse(settings.RATE_LIMIT_GENERAL),
        "upload": RateLimiter.parse(settings.RATE_LIMIT_UPLOAD),
    }


def build_context(engine=None, mailer=None, blob_store=None, rate_limiters=None) -> AppContext:
    if engine is None:
        engine, session_factory = default_engine, SessionLocal
    else:
        session_factory = build_session_factory(engine)
    return AppContext(
        engine=engine,
        session_factory=session_factory,
        mailer=mailer if mailer is not None else BrevoMailer.from_settings(),
        blob_store=blob_store if blob_store is not None else S3BlobStore.from_settings(),
        rate_limiters=rate_limiters if rate_limiters is not None else default_rate_limiters(),
    )


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_mailer(request: Request):
    return request.app.state.context.mailer


def get_blob_store(request: Request):
    return request.app.state.context.blob_store
