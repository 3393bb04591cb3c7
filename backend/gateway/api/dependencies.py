"""FastAPI dependency providers.

Services are built once in the application lifespan and stored on
``app.state``. Tests replace them through ``app.dependency_overrides``.
"""

from fastapi import Request

from gateway.api.exceptions import PaymentRequiredError
from gateway.llm.registry import ProviderRegistry
from gateway.services.access_gate import AccessGate, Deny, Grant, RequestContext
from gateway.services.auth_service import AuthService
from gateway.services.chat_service import CompletionOrchestrator
from gateway.services.debt_ledger import DebtLedger

PAYMENT_SIGNATURE_HEADERS = ("payment-signature", "x-payment")


def get_ledger(request: Request) -> DebtLedger:
    return request.app.state.ledger


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_access_gate(request: Request) -> AccessGate:
    return request.app.state.access_gate


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_orchestrator(request: Request) -> CompletionOrchestrator:
    return request.app.state.orchestrator


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _payment_header(request: Request) -> str | None:
    for name in PAYMENT_SIGNATURE_HEADERS:
        value = request.headers.get(name)
        if value:
            return value
    return None


async def require_grant(request: Request, gate: AccessGate, route: str) -> Grant:
    """Run the access gate for ``route``.

    Called from the handler body, after FastAPI has validated the request,
    so malformed bodies are rejected before any gating happens.

    Raises:
        PaymentRequiredError: The gate denied the request.
    """
    decision = await gate.evaluate(RequestContext(
        route=route,
        bearer_token=_bearer_token(request),
        payment_header=_payment_header(request),
    ))
    if isinstance(decision, Deny):
        raise PaymentRequiredError(
            reason=decision.reason,
            accepts=[decision.requirements.to_wire()],
            resource=str(request.url),
        )
    return decision
