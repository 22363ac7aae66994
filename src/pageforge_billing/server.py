"""HTTP surface for PageForge checkout, verification, access checks and webhooks."""

from __future__ import annotations

import argparse
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import clean_text, configure_logging, env_int, env_text, load_env_file
from .errors import BillingError
from .service import BillingService


logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _request_base_url(raw_request: Request) -> str:
    forwarded_proto = clean_text(raw_request.headers.get("x-forwarded-proto"))
    forwarded_host = clean_text(raw_request.headers.get("x-forwarded-host"))
    if forwarded_proto and forwarded_host:
        proto = forwarded_proto.split(",")[0].strip().lower()
        host = forwarded_host.split(",")[0].strip()
        if proto and host:
            return f"{proto}://{host}"
    return str(raw_request.base_url).rstrip("/")


class CheckoutRequest(BaseModel):
    plan: str | None = None
    email: str | None = None


class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")


class CheckAccessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str | None = None
    access_token: str | None = Field(default=None, alias="accessToken")


class PortalRequest(BaseModel):
    email: str | None = None


_service_lock = threading.Lock()


def get_service(app: FastAPI) -> BillingService:
    service = getattr(app.state, "service", None)
    if service is not None:
        return service
    with _service_lock:
        if getattr(app.state, "service", None) is None:
            app.state.service = BillingService.from_env()
        return app.state.service


def _service(raw_request: Request) -> BillingService:
    return get_service(raw_request.app)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    service = await run_in_threadpool(get_service, app)
    logger.info("Stripe mode: %s, license store: %s", service.stripe_mode, service.store.backend)
    if service.stripe_mode == "unconfigured":
        logger.warning("PAGEFORGE_STRIPE_SECRET_KEY is not set; checkout and verification will fail")
    if service.should_warm_prices():
        resolved, _ = await run_in_threadpool(service.warm_prices)
        if resolved:
            logger.info("Price catalog ready: %s", ", ".join(f"{plan}={price}" for plan, price in resolved.items()))
    yield


stripe_router = APIRouter(prefix="/api/stripe")


@stripe_router.post("/checkout")
def checkout(request: CheckoutRequest, raw_request: Request):
    return _service(raw_request).checkout(
        request.plan,
        request.email,
        base_url=_request_base_url(raw_request),
    )


@stripe_router.post("/verify")
def verify(request: VerifyRequest, raw_request: Request):
    return _service(raw_request).verify(request.session_id)


@stripe_router.post("/check-access")
def check_access(request: CheckAccessRequest, raw_request: Request):
    return _service(raw_request).check_access(request.email, request.access_token)


@stripe_router.post("/portal")
def portal(request: PortalRequest, raw_request: Request):
    return _service(raw_request).portal(request.email, base_url=_request_base_url(raw_request))


async def stripe_webhook(raw_request: Request):
    payload = await raw_request.body()
    signature_header = clean_text(raw_request.headers.get("Stripe-Signature"))
    service = _service(raw_request)
    return await run_in_threadpool(service.handle_webhook, payload, signature_header)


def health(raw_request: Request):
    return {
        "status": "ok",
        "timestamp": _now_iso(),
        "stripe_mode": _service(raw_request).stripe_mode,
    }


async def _billing_error_handler(_: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(service: BillingService | None = None) -> FastAPI:
    app = FastAPI(title="PageForge Billing", docs_url=None, redoc_url=None, lifespan=_lifespan)
    app.state.service = service
    app.add_exception_handler(BillingError, _billing_error_handler)
    app.include_router(stripe_router)
    app.add_api_route("/webhook", stripe_webhook, methods=["POST"])
    app.add_api_route("/api/health", health, methods=["GET"])
    return app


app = create_app()


def main(argv: list[str] | None = None):
    load_env_file()
    default_port = env_int("PORT", 0) or env_int("PAGEFORGE_PORT", DEFAULT_PORT)
    default_host = env_text("PAGEFORGE_HOST") or ("0.0.0.0" if env_text("PORT") else "127.0.0.1")

    parser = argparse.ArgumentParser(prog="pageforge-billing-server")
    parser.add_argument("--host", default=default_host)
    parser.add_argument("--port", type=int, default=default_port)
    args = parser.parse_args(argv)
    serve(args.host, args.port)


def serve(host: str, port: int):
    configure_logging()
    level = env_text("PAGEFORGE_LOG_LEVEL", "info").lower()
    if level not in {"critical", "error", "warning", "info", "debug", "trace"}:
        level = "info"
    uvicorn.run(app, host=host, port=port, log_level=level)


if __name__ == "__main__":
    main()
