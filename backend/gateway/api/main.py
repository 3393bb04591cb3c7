"""FastAPI application setup."""

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure

from gateway.api.exceptions import PaymentRequiredError, ValidationError
from gateway.api.response import error_body
from gateway.api.routes import authorize, chat, debt, health, models
from gateway.config import Settings, cors_origins_from_env
from gateway.db.mongo import close_database
from gateway.llm import LLMError, ProviderRegistry, RateLimitError
from gateway.services.access_gate import AccessGate
from gateway.services.auth_service import AuthService
from gateway.services.auto_payment import AutoPayer
from gateway.services.chat_service import CompletionOrchestrator
from gateway.services.debt_ledger import DebtLedger
from gateway.services.payment_signature import encode_payment_required
from gateway.services.settlement import FacilitatorClient
from gateway.tools import ToolCatalogBridge, load_server_configs

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    settings = Settings.from_env()
    http_client = httpx.AsyncClient(timeout=settings.settlement_timeout)

    ledger = DebtLedger()
    auth_service = AuthService(ledger, settings.jwt_secret)
    facilitator = FacilitatorClient(settings.facilitator_url, settings.settlement_timeout, http_client)
    auto_payer = AutoPayer(
        auth_service,
        ledger,
        facilitator,
        base_url=settings.base_url,
        timeout=settings.settlement_timeout,
        http_client=http_client,
    )

    bridge = ToolCatalogBridge()
    await bridge.connect_all(load_server_configs(settings.mcp_servers_file))

    registry = ProviderRegistry.from_keys(
        anthropic_api_key=settings.anthropic_api_key,
        gemini_api_key=settings.gemini_api_key,
        timeout=settings.llm_timeout,
    )

    app.state.ledger = ledger
    app.state.auth_service = auth_service
    app.state.access_gate = AccessGate(auth_service, ledger, auto_payer, settings)
    app.state.registry = registry
    app.state.orchestrator = CompletionOrchestrator(
        registry,
        bridge,
        max_rounds=settings.max_tool_rounds,
        rpc_url=settings.rpc_url,
    )
    logger.info(
        f"Gateway started on {settings.network}",
        extra={"pay_to": settings.pay_to, "facilitator": settings.facilitator_url},
    )
    yield
    # Shutdown
    await bridge.close()
    await http_client.aclose()
    await close_database()


app = FastAPI(
    title="LLM Pay Gateway",
    description="Metered multi-provider LLM gateway with x402 payments",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_from_env(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["payment-required", "retry-after"],
)


def _location(loc: tuple) -> str:
    parts = [str(part) for part in loc]
    if parts and parts[0] in ("body", "query", "path", "header"):
        parts = parts[1:]
    return ".".join(parts) or "body"


# Exception handlers
@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle malformed request bodies field by field."""
    errors = exc.errors()
    message = "; ".join(f"{_location(e['loc'])}: {e['msg']}" for e in errors) or "Invalid request"
    param = _location(errors[0]["loc"]) if errors else None
    return JSONResponse(
        status_code=400,
        content=error_body(message, "invalid_request_error", param=param, code="invalid_request"),
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=error_body(exc.message, "invalid_request_error", param=exc.param, code="invalid_request"),
    )


@app.exception_handler(PaymentRequiredError)
async def payment_required_handler(request: Request, exc: PaymentRequiredError) -> JSONResponse:
    """Quote the price of the request."""
    return JSONResponse(
        status_code=402,
        content={
            **error_body(exc.reason, "payment_required", code="payment_required"),
            "accepts": exc.accepts,
        },
        headers={"payment-required": encode_payment_required(exc.accepts, exc.resource, exc.reason)},
    )


@app.exception_handler(LLMError)
async def llm_error_handler(request: Request, exc: LLMError) -> JSONResponse:
    """Handle provider errors."""
    headers = {}
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))

    logger.warning(f"Provider error: {exc}", extra={"provider": exc.provider, "code": exc.code})
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.message, exc.error_type, param=getattr(exc, "param", None), code=exc.code),
        headers=headers or None,
    )


@app.exception_handler(ConnectionFailure)
async def mongo_connection_handler(request: Request, exc: ConnectionFailure) -> JSONResponse:
    """Handle MongoDB connection failure or timeout."""
    logger.error(f"Database unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content=error_body("Database is not available. Please try again later.", "api_error", code="database_unavailable"),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.url.path}")
    return JSONResponse(
        status_code=500,
        content=error_body("Internal server error", "api_error", code="internal_error"),
    )


# Register routes
app.include_router(health.router)
app.include_router(models.router, prefix="/v1")
app.include_router(authorize.router, prefix="/v1")
app.include_router(chat.router, prefix="/v1")
app.include_router(debt.router, prefix="/v1")
