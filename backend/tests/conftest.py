"""Pytest fixtures for testing."""

from collections.abc import AsyncGenerator, AsyncIterator
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from eth_account import Account
from eth_account.messages import encode_typed_data
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from gateway.api import dependencies
from gateway.api.main import app
from gateway.config import Settings
from gateway.db import mongo
from gateway.llm.models import ChatChunk, ChatParams, ChatResult, FunctionCall, ToolCall, Usage
from gateway.llm.providers.base import LLMProvider
from gateway.llm.registry import ModelRoute, ProviderRegistry
from gateway.models.auth import SessionClaims
from gateway.services.access_gate import AccessGate
from gateway.services.auth_service import AuthService
from gateway.services.auto_payment import AutoPaymentResult
from gateway.services.chat_service import CompletionOrchestrator
from gateway.services.debt_ledger import DebtLedger
from gateway.services.payment_signature import (
    PaymentPayload,
    Permit2Authorization,
    Permit2Witness,
    TokenPermissions,
    build_transfer_authorization,
    encode_payment_header,
    permit2_typed_data,
    sign_transfer_authorization,
)
from gateway.services.pricing import build_requirements

TEST_JWT_SECRET = "test-secret-that-is-long-enough-for-hs256"
STUB_MODEL = "anthropic/claude-sonnet-4.5"

# Fixed keys so signatures are reproducible
PAYER_KEY = "0x" + "11" * 32
SESSION_KEY = "0x" + "22" * 32
WALLET = "0x1111111111111111111111111111111111111111"


class StubProvider(LLMProvider):
    """Deterministic provider replaying scripted results.

    The last scripted result repeats once the script is exhausted. A scripted
    exception is raised instead of returned. Streams split the content into
    one chunk per word.
    """

    def __init__(self, results: list[ChatResult | Exception]):
        self.results = results
        self.calls: list[ChatParams] = []

    @property
    def name(self) -> str:
        return "stub"

    def _next(self, params: ChatParams) -> ChatResult:
        self.calls.append(params.model_copy(deep=True))
        index = min(len(self.calls) - 1, len(self.results) - 1)
        result = self.results[index]
        if isinstance(result, Exception):
            raise result
        return result

    async def chat(self, params: ChatParams) -> ChatResult:
        return self._next(params)

    async def chat_stream(self, params: ChatParams) -> AsyncIterator[ChatChunk]:
        result = self._next(params)
        if result.content:
            words = result.content.split(" ")
            for i, word in enumerate(words):
                yield ChatChunk(content=word if i == len(words) - 1 else word + " ")
        for call in result.tool_calls or []:
            yield ChatChunk(tool_calls=[call])
        yield ChatChunk(
            finish_reason=result.finish_reason,
            usage=result.usage,
            provider_parts=result.provider_parts,
        )


def signed_payment_header(settings: Settings, key: str = PAYER_KEY, payer: str | None = None) -> str:
    """x402 payment header carrying a valid transfer authorization."""
    requirements = build_requirements(settings, Decimal("0.01"))
    authorization = build_transfer_authorization(payer or Account.from_key(key).address, requirements)
    signature = sign_transfer_authorization(key, authorization, requirements)
    return encode_payment_header(PaymentPayload(
        accepted=requirements.to_wire(),
        payload={"authorization": authorization.to_wire(), "signature": signature},
    ))


def signed_permit2_header(settings: Settings, key: str = PAYER_KEY, payer: str | None = None) -> str:
    """x402 payment header carrying a Permit2 witness transfer."""
    requirements = build_requirements(settings, Decimal("0.01"))
    authorization = Permit2Authorization(
        from_address=payer or Account.from_key(key).address,
        permitted=TokenPermissions(token=requirements.asset, amount=requirements.amount),
        spender="0x4444444444444444444444444444444444444444",
        nonce="7",
        deadline="1700000300",
        witness=Permit2Witness(pay_to=requirements.pay_to, nonce="0x" + "ab" * 32),
    )
    signable = encode_typed_data(full_message=permit2_typed_data(authorization, requirements))
    signature = Account.sign_message(signable, private_key=key).signature
    return encode_payment_header(PaymentPayload(
        accepted=requirements.to_wire(),
        payload={"permit2Authorization": authorization.to_wire(), "signature": "0x" + bytes(signature).hex()},
    ))


def tool_call(call_id: str, name: str, arguments: str = "{}") -> ToolCall:
    return ToolCall(id=call_id, function=FunctionCall(name=name, arguments=arguments))


def text_result(content: str, prompt: int = 5, completion: int = 1) -> ChatResult:
    return ChatResult(content=content, finish_reason="stop", usage=Usage.of(prompt, completion))


def stub_registry(provider: LLMProvider) -> ProviderRegistry:
    route = ModelRoute(STUB_MODEL, "stub", "stub-model", "Stub Model")
    return ProviderRegistry({"stub": provider}, routes={STUB_MODEL: route})


@pytest.fixture
def settings() -> Settings:
    return Settings(jwt_secret=TEST_JWT_SECRET, self_base_url="http://test")


@pytest.fixture
def payer_account():
    return Account.from_key(PAYER_KEY)


@pytest.fixture
def session_account():
    return Account.from_key(SESSION_KEY)


@pytest_asyncio.fixture
async def mock_db() -> AsyncGenerator[Any, None]:
    """Provide a mock MongoDB database for testing."""
    mock_client = AsyncMongoMockClient()
    mock_database = mock_client[mongo.DATABASE_NAME]

    # Replace the real client with mock
    mongo.set_client(mock_client)

    yield mock_database

    # Cleanup
    mongo.set_client(None)


@pytest.fixture
def ledger(mock_db: Any) -> DebtLedger:
    return DebtLedger()


@pytest.fixture
def auth_service(ledger: DebtLedger) -> AuthService:
    return AuthService(ledger, TEST_JWT_SECRET)


@pytest.fixture
def stub_provider() -> StubProvider:
    return StubProvider([text_result("4")])


@pytest_asyncio.fixture
async def client(mock_db: Any, stub_provider: StubProvider, ledger: DebtLedger, auth_service: AuthService, settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client with services bound to test doubles.

    Tests that need a specific access gate override
    ``dependencies.get_access_gate`` themselves.
    """
    registry = stub_registry(stub_provider)
    orchestrator = CompletionOrchestrator(registry, bridge=None)

    app.dependency_overrides[dependencies.get_ledger] = lambda: ledger
    app.dependency_overrides[dependencies.get_auth_service] = lambda: auth_service
    app.dependency_overrides[dependencies.get_registry] = lambda: registry
    app.dependency_overrides[dependencies.get_orchestrator] = lambda: orchestrator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auto_payer() -> AsyncMock:
    """Auto-payer double that settles successfully unless told otherwise."""
    payer = AsyncMock()
    payer.auto_pay = AsyncMock(return_value=AutoPaymentResult(success=True, settlement_reference="0xtx"))
    return payer


@pytest_asyncio.fixture
async def gated_client(client: AsyncClient, auth_service: AuthService, ledger: DebtLedger, auto_payer: AsyncMock, settings: Settings) -> AsyncClient:
    """``client`` behind a real access gate."""
    gate = AccessGate(auth_service, ledger, auto_payer, settings)
    app.dependency_overrides[dependencies.get_access_gate] = lambda: gate
    return client


@pytest_asyncio.fixture
async def session_token(auth_service: AuthService, ledger: DebtLedger) -> str:
    """Bearer token for WALLET."""
    user = await ledger.get_or_create_user(WALLET)
    return auth_service.issue_token(
        SessionClaims(userId=str(user["_id"]), sessionKeyId="key-1", walletAddress=WALLET, chainId=84532)
    )
