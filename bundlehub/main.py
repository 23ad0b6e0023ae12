import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.context import AppContext, build_context
from .core.database import Base
from .core.errors import AppError
from .core.log import setup_logging
from .core.security import get_password_hash
from .core.storage import StorageError
from .models.bundle import Bundle  # noqa: F401
from .models.download_token import Download, DownloadToken  # noqa: F401
from .models.fulfillment_job import FulfillmentJob  # noqa: F401
from .models.order import Order, OrderItem  # noqa: F401
from .models.otp import OTPVerification  # noqa: F401
from .models.user import Role, User
from .routers.admin_orders import router as admin_orders_router
from .routers.auth import router as auth_router
from .routers.checkout import router as checkout_router
from .routers.downloads import router as downloads_router
from .services.fulfillment import run_sweeper

logger = logging.getLogger(__name__)


def error_response(status_code: int, message: str, code: str, **details) -> JSONResponse:
    body = {"message": message, "code": code, "statusCode": status_code}
    body.update(details)
    return JSONResponse(status_code=status_code, content={"success": False, "error": body})


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request data")
    return error_response(400, message, "VALIDATION_ERROR", details=jsonable_errors(errors))


def jsonable_errors(errors):
    return [{"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg"), "type": e.get("type")} for e in errors]


async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage failure on %s: %s", request.url.path, exc)
    return error_response(502, "File storage is unavailable. Please try again.", "STORAGE_ERROR")


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "An unexpected error occurred. Please try again.", "INTERNAL_ERROR")


def seed_admin(context: AppContext):
    """Create the configured admin account if it does not exist yet."""
    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        return
    email = settings.ADMIN_EMAIL.strip().lower()
    with context.session_factory() as db:
        if not db.query(User).filter(User.email == email).first():
            db.add(User(
                email=email,
                name="Administrator",
                password_hash=get_password_hash(settings.ADMIN_PASSWORD),
                role=Role.ADMIN,
                is_active=True,
            ))
            db.commit()
            logger.info("Seeded admin account %s", email)


def create_app(context: AppContext | None = None) -> FastAPI:
    setup_logging()
    context = context or build_context()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Retries failed fulfillment emails and picks up those a previous process never sent
        sweeper = asyncio.create_task(run_sweeper(context, settings.FULFILLMENT_SWEEP_INTERVAL_SECONDS))
        app.state.fulfillment_sweeper = sweeper
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.state.context = context

    # Configure CORS
    raw_origins = settings.CORS_ORIGINS or "*"
    origins = [o.strip() for o in raw_origins.split(",") if o.strip()] if isinstance(raw_origins, str) else raw_origins
    allow_credentials = False if "*" in origins else True
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Create tables
    Base.metadata.create_all(bind=context.engine)
    seed_admin(context)

    # Routers
    app.include_router(auth_router)
    app.include_router(checkout_router)
    app.include_router(admin_orders_router)
    app.include_router(downloads_router)

    @app.get("/")
    def root():
        return {"status": "ok"}

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    return app


app = create_app()
