from fastapi import FastAPI, BackgroundTasks, HTTPException, Header, Depends, Request, APIRouter
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
import logging
import os
import traceback

from config import Settings
from contact import ContactRejected, submit_contact
from digest import run_daily_digest, schedule_digest
from mailer import Mailer
from middleware import (
    BodySizeLimitMiddleware,
    PathNormalizeMiddleware,
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
)
from models import db, init_db
from otp import MemoryOtpStore, OtpRejected, OtpService, RedisOtpStore
from ratelimit import FixedWindowLimiter, rate_limited
from registration import RegistrationPipeline, SubmissionFailed, SubmissionRejected
from storage import PonyStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(settings: Settings):
    root_logger = logging.getLogger()
    if getattr(root_logger, "_vexstorm_configured", False):
        return
    root_logger.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if settings.log_file:
        os.makedirs(os.path.dirname(settings.log_file) or ".", exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        root_logger.addHandler(file_handler)

    root_logger._vexstorm_configured = True
    logger.info(f"Logging configured. Log file: {settings.log_file or 'disabled'}")


class SendOtpRequest(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None


class VerifyOtpRequest(BaseModel):
    email: Optional[str] = None
    otp: Optional[Any] = None


class ManualRegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    form_data: Optional[Dict[str, Any]] = Field(default=None, alias="formData")
    transaction_id: Optional[Any] = Field(default=None, alias="transactionId")
    device_id: Optional[Any] = Field(default=None, alias="deviceId")
    honeypot: Optional[Any] = None
    duration: Optional[Any] = None


class ContactRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    message: Optional[str] = None
    project_stage: Optional[str] = Field(default=None, alias="projectStage")
    budget: Optional[str] = None
    ai_usage: Optional[str] = Field(default=None, alias="aiUsage")
    location: Optional[str] = None
    employees: Optional[str] = None
    experience: Optional[str] = None


def create_app(settings: Optional[Settings] = None, store=None, otp_store=None, mailer=None) -> FastAPI:
    """
    Builds the API and wires its collaborators. Tests pass fakes; production
    passes nothing and gets Pony, MailerSend and the configured OTP store.
    """
    settings = settings or Settings.from_env()
    store = store or PonyStore()
    mailer = mailer or Mailer(settings)
    if otp_store is None:
        otp_store = RedisOtpStore.from_url(settings.otp_redis_url) if settings.otp_redis_url else MemoryOtpStore()

    limiters = {
        "general": FixedWindowLimiter("general", settings.general_limit),
        "auth": FixedWindowLimiter("auth", settings.auth_limit),
        "registration": FixedWindowLimiter("registration", settings.registration_limit),
        "otp": FixedWindowLimiter("otp", settings.otp_limit),
    }

    app = FastAPI(
        title="VexStorm 26 Registration API",
        dependencies=[Depends(rate_limited(limiters["general"]))],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.mailer = mailer
    app.state.limiters = limiters
    app.state.otp = OtpService(otp_store, store, mailer, ttl_seconds=settings.otp_ttl_seconds)
    app.state.pipeline = RegistrationPipeline(store, settings)
    app.state.scheduler = AsyncIOScheduler(timezone=timezone.utc)

    # Last added runs first: log -> headers -> CORS -> size limit -> path rewrite
    app.add_middleware(PathNormalizeMiddleware)
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            where = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
            message = f"Invalid request: {where or 'body'} {errors[0].get('msg', '')}".strip()
        else:
            message = "Invalid request."
        return JSONResponse({"error": message}, status_code=400)

    @app.exception_handler(SubmissionRejected)
    async def submission_rejected(request: Request, exc: SubmissionRejected):
        logger.warning(f"REJECTED: {request.url.path}: {exc.message}")
        return JSONResponse({"status": "failure", "error": exc.message}, status_code=400)

    @app.exception_handler(OtpRejected)
    async def otp_rejected(request: Request, exc: OtpRejected):
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(ContactRejected)
    async def contact_rejected(request: Request, exc: ContactRejected):
        logger.warning(f"REJECTED: {request.url.path}: {exc.message}")
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    async def verify_api_key(x_api_key: str = Header(None)):
        if not settings.admin_api_key:
            raise HTTPException(status_code=403, detail="Admin API key not configured on server")
        if x_api_key != settings.admin_api_key:
            raise HTTPException(status_code=403, detail="Invalid API Key")
        return x_api_key

    admin_router = APIRouter(prefix="/admin", tags=["admin"])

    @admin_router.post("/digest")
    async def trigger_digest(api_key: str = Depends(verify_api_key)):
        """Run the contact digest now instead of waiting for the schedule."""
        logger.info("ADMIN: Triggering daily digest...")
        result = await run_daily_digest(store, mailer, settings)
        return {"status": "completed", "sent": result.sent, "count": result.count}

    app.include_router(admin_router)

    @app.on_event("startup")
    async def startup():
        configure_logging(settings)
        logger.info("STARTUP: Initializing...")
        if db.provider is None:
            init_db(settings.database_url)
        else:
            logger.info("STARTUP: Database already bound")

        if settings.scheduler_enabled:
            try:
                schedule_digest(app.state.scheduler, store, mailer, settings)
                app.state.scheduler.start()
                logger.info("SCHEDULER: Started")
            except Exception as e:
                logger.error(f"SCHEDULER ERROR: {e}", exc_info=True)

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.scheduler.running:
            app.state.scheduler.shutdown(wait=False)

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "service": settings.service_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/send-otp", dependencies=[Depends(rate_limited(limiters["otp"]))])
    async def send_otp(body: SendOtpRequest):
        await app.state.otp.request_code(body.email, body.name)
        return {"status": "success", "message": "OTP Sent"}

    @app.post("/verify-otp", dependencies=[Depends(rate_limited(limiters["auth"]))])
    async def verify_otp(body: VerifyOtpRequest):
        await run_in_threadpool(app.state.otp.verify_code, body.email, body.otp)
        return {"status": "success", "verified": True}

    @app.post("/manual-register", dependencies=[Depends(rate_limited(limiters["registration"]))])
    def manual_register(body: ManualRegisterRequest, background_tasks: BackgroundTasks):
        try:
            receipt = app.state.pipeline.submit(body.model_dump(by_alias=True))
        except SubmissionRejected:
            raise
        except SubmissionFailed as e:
            return JSONResponse({"error": str(e)}, status_code=500)
        except Exception as e:
            logger.error(f"REGISTRATION ERROR: {e}", exc_info=True)
            content = {"error": str(e) or "Registration failed."}
            if settings.debug_errors:
                content["stack"] = traceback.format_exc()
            return JSONResponse(content, status_code=500)

        logger.info(f"REGISTRATION: Accepted {receipt.registration_id} for {receipt.leader_email}")
        if settings.send_confirmation_email:
            background_tasks.add_task(
                mailer.send_registration_confirmation,
                receipt.leader_email,
                receipt.leader_name,
                receipt.team_name,
                receipt.registration_id,
            )
        return {"status": "success", "registrationId": receipt.registration_id}

    @app.post("/contact", dependencies=[Depends(rate_limited(limiters["auth"]))])
    def contact(body: ContactRequest):
        message = submit_contact(store, body.model_dump(by_alias=True), strict_writes=settings.strict_writes)
        return {"status": "success", "message": message}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    # In production the process manager (Render) starts uvicorn itself
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "5001")), log_level="info")
