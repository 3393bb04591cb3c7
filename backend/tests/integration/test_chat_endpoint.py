"""Integration tests for POST /v1/chat/completions."""

import json
from collections.abc import AsyncIterator
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from gateway.api import dependencies
from gateway.api.main import app
from gateway.llm.errors import ProviderUnavailableError, RateLimitError
from gateway.llm.models import ChatChunk, ChatParams, ChatResult, Usage
from gateway.models.auth import AuthorizeRequest
from gateway.services.auto_payment import AutoPaymentResult
from gateway.services.chat_service import CompletionOrchestrator
from gateway.services.debt_ledger import USAGE_COLLECTION, USERS_COLLECTION
from gateway.services.payment_signature import decode_payment_required
from gateway.services.pricing import calculate_cost
from gateway.tools.mcp_bridge import ToolCatalogBridge

from conftest import (
    SESSION_KEY,
    STUB_MODEL,
    WALLET,
    StubProvider,
    signed_payment_header,
    stub_registry,
    text_result,
    tool_call,
)

CHAT_BODY = {"model": STUB_MODEL, "messages": [{"role": "user", "content": "2+2?"}]}
CATALOG_BODY = {**CHAT_BODY, "plugins": [{"id": "web"}]}
SMART_ACCOUNT = "0x2222222222222222222222222222222222222222"


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def sse_events(text: str) -> list[str]:
    """Split an SSE body into its ``data:`` payloads."""
    assert text.endswith("\n\n")
    frames = text.split("\n\n")[:-1]
    assert all(frame.startswith("data: ") for frame in frames)
    return [frame[len("data: "):] for frame in frames]


class FailingStreamProvider(StubProvider):
    """Streams one chunk and then fails."""

    async def chat(self, params: ChatParams) -> ChatResult:
        raise RateLimitError("Upstream rate limit exceeded", retry_after=7, provider="stub")

    async def chat_stream(self, params: ChatParams) -> AsyncIterator[ChatChunk]:
        yield ChatChunk(content="partial")
        raise ProviderUnavailableError("Upstream went away", provider="stub")


def use_provider(provider: StubProvider, bridge: ToolCatalogBridge | None = None) -> None:
    orchestrator = CompletionOrchestrator(stub_registry(provider), bridge)
    app.dependency_overrides[dependencies.get_orchestrator] = lambda: orchestrator


def catalog_bridge() -> MagicMock:
    """One connected tool server whose prompt names the acting wallet."""
    bridge = MagicMock(spec=ToolCatalogBridge)
    bridge.has_servers = True
    bridge.owns.side_effect = ToolCatalogBridge.is_internal
    bridge.tools.return_value = []
    bridge.system_messages.side_effect = lambda wallet, rpc_url: [f"Act for {wallet}"]
    bridge.execute = AsyncMock(return_value="quote: 1 USDC")
    return bridge


def failing_after_tool_round() -> StubProvider:
    return StubProvider([
        ChatResult(
            tool_calls=[tool_call("call_1", "mcp_lifi__get-quote")],
            finish_reason="tool_calls",
            usage=Usage.of(1000, 300),
        ),
        ProviderUnavailableError("Upstream went away", provider="stub"),
    ])


class TestGating:
    async def test_no_credential_is_quoted(self, gated_client):
        response = await gated_client.post("/v1/chat/completions", json=CHAT_BODY)

        assert response.status_code == 402
        body = response.json()
        assert body["error"]["type"] == "payment_required"
        assert body["accepts"][0]["amount"] == "10000"

        (requirement,) = decode_payment_required(response.headers["payment-required"])
        assert requirement.amount == "10000"
        assert requirement.network == "eip155:84532"

    async def test_validation_runs_before_gate(self, gated_client):
        response = await gated_client.post("/v1/chat/completions", json={"model": STUB_MODEL})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["type"] == "invalid_request_error"
        assert error["param"] == "messages"
        assert "payment-required" not in response.headers

    async def test_empty_messages_rejected(self, gated_client):
        response = await gated_client.post("/v1/chat/completions", json={"model": STUB_MODEL, "messages": []})
        assert response.status_code == 400

    async def test_unsupported_model_rejected_before_gate(self, gated_client):
        response = await gated_client.post(
            "/v1/chat/completions",
            json={"model": "meta/llama-3", "messages": [{"role": "user", "content": "hi"}]},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "model_not_supported"

    async def test_signed_payment_grants(self, gated_client, settings):
        response = await gated_client.post(
            "/v1/chat/completions",
            json=CHAT_BODY,
            headers={"payment-signature": signed_payment_header(settings)},
        )
        assert response.status_code == 200

    async def test_legacy_payment_header_name(self, gated_client, settings):
        response = await gated_client.post(
            "/v1/chat/completions",
            json=CHAT_BODY,
            headers={"x-payment": signed_payment_header(settings)},
        )
        assert response.status_code == 200

    async def test_auto_pay_failure_denies(self, gated_client, session_token, auto_payer, mock_db):
        await mock_db[USERS_COLLECTION].update_one(
            {"walletAddress": WALLET}, {"$set": {"currentDebt": "12.00", "paymentThreshold": "10.00"}}
        )
        auto_payer.auto_pay.return_value = AutoPaymentResult(success=False, reason="no delegated signer")

        response = await gated_client.post("/v1/chat/completions", json=CHAT_BODY, headers=bearer(session_token))

        assert response.status_code == 402
        assert "no delegated signer" in response.json()["error"]["message"]


class TestCompletion:
    async def test_json_completion(self, gated_client, session_token):
        response = await gated_client.post("/v1/chat/completions", json=CHAT_BODY, headers=bearer(session_token))

        assert response.status_code == 200
        data = response.json()
        assert data["object"] == "chat.completion"
        assert data["model"] == STUB_MODEL
        assert data["choices"][0]["message"] == {"role": "assistant", "content": "4"}
        assert data["choices"][0]["finish_reason"] == "stop"
        assert data["usage"] == {"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6}

    async def test_usage_added_to_debt(self, gated_client, session_token, ledger, mock_db):
        await gated_client.post("/v1/chat/completions", json=CHAT_BODY, headers=bearer(session_token))

        status = await ledger.get_debt(WALLET)
        # (5 * $3 + 1 * $15) per million tokens, plus 10% commission
        assert status.current_debt == Decimal("0.000033")
        usage = await mock_db[USAGE_COLLECTION].find_one({"walletAddress": WALLET})
        assert usage["promptTokens"] == 5
        assert usage["isPaid"] is False

    async def test_provider_error_mapped(self, gated_client, session_token):
        use_provider(FailingStreamProvider([]))

        response = await gated_client.post("/v1/chat/completions", json=CHAT_BODY, headers=bearer(session_token))

        assert response.status_code == 429
        assert response.headers["retry-after"] == "7"
        assert response.json()["error"]["type"] == "rate_limit_error"


class TestStreaming:
    async def test_sse_framing(self, gated_client, session_token):
        response = await gated_client.post(
            "/v1/chat/completions", json={**CHAT_BODY, "stream": True}, headers=bearer(session_token)
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = sse_events(response.text)
        assert events[-1] == "[DONE]"

        chunks = [json.loads(event) for event in events[:-1]]
        assert all(c["object"] == "chat.completion.chunk" for c in chunks)
        assert "".join(c["choices"][0]["delta"].get("content", "") for c in chunks) == "4"
        assert chunks[-1]["usage"] == {"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6}
        assert all("usage" not in c for c in chunks[:-1])

    async def test_stream_usage_recorded(self, gated_client, session_token, ledger):
        await gated_client.post(
            "/v1/chat/completions", json={**CHAT_BODY, "stream": True}, headers=bearer(session_token)
        )

        status = await ledger.get_debt(WALLET)
        assert status.current_debt == Decimal("0.000033")

    async def test_mid_stream_error_event(self, gated_client, session_token, ledger):
        use_provider(FailingStreamProvider([]))

        response = await gated_client.post(
            "/v1/chat/completions", json={**CHAT_BODY, "stream": True}, headers=bearer(session_token)
        )

        assert response.status_code == 200
        events = sse_events(response.text)
        assert json.loads(events[0])["choices"][0]["delta"]["content"] == "partial"
        assert json.loads(events[1])["error"]["message"] == "Upstream went away"
        assert events[-1] == "[DONE]"

        status = await ledger.get_debt(WALLET)
        assert status.current_debt == Decimal(0)


class TestPartialUsage:
    async def test_json_failure_after_tool_round_is_billed(self, gated_client, session_token, ledger):
        use_provider(failing_after_tool_round(), catalog_bridge())

        response = await gated_client.post("/v1/chat/completions", json=CATALOG_BODY, headers=bearer(session_token))

        assert response.status_code == 503
        status = await ledger.get_debt(WALLET)
        assert status.current_debt == calculate_cost(STUB_MODEL, 1000, 300)

    async def test_stream_failure_after_tool_round_is_billed(self, gated_client, session_token, ledger):
        use_provider(failing_after_tool_round(), catalog_bridge())

        response = await gated_client.post(
            "/v1/chat/completions", json={**CATALOG_BODY, "stream": True}, headers=bearer(session_token)
        )

        events = sse_events(response.text)
        assert json.loads(events[-2])["error"]["message"] == "Upstream went away"
        status = await ledger.get_debt(WALLET)
        assert status.current_debt == calculate_cost(STUB_MODEL, 1000, 300)


class TestToolServerWallet:
    async def test_session_with_smart_account(self, gated_client, auth_service, ledger, stub_provider):
        token, _ = await auth_service.authorize(WALLET, AuthorizeRequest(
            smartAccountAddress=SMART_ACCOUNT,
            privateKey=SESSION_KEY,
            serializedSessionKey="serialized-permission",
            eoaAddress=WALLET,
            chainId=84532,
            nonce=0,
        ))
        use_provider(stub_provider, catalog_bridge())

        response = await gated_client.post("/v1/chat/completions", json=CATALOG_BODY, headers=bearer(token))

        assert response.status_code == 200
        system = stub_provider.calls[0].messages[0]
        assert system.role == "system"
        assert system.content == f"Act for {SMART_ACCOUNT}"
        # Debt stays with the owner wallet
        status = await ledger.get_debt(WALLET)
        assert status.current_debt == Decimal("0.000033")

    async def test_session_without_key_on_file(self, gated_client, session_token, stub_provider):
        use_provider(stub_provider, catalog_bridge())

        await gated_client.post("/v1/chat/completions", json=CATALOG_BODY, headers=bearer(session_token))

        assert stub_provider.calls[0].messages[0].content == f"Act for {WALLET}"

    async def test_payment_grant_uses_payer(self, gated_client, settings, payer_account):
        provider = StubProvider([text_result("4")])
        use_provider(provider, catalog_bridge())

        await gated_client.post(
            "/v1/chat/completions",
            json=CATALOG_BODY,
            headers={"payment-signature": signed_payment_header(settings)},
        )

        assert provider.calls[0].messages[0].content.lower() == f"act for {payer_account.address.lower()}"
