"""Facilitator client for x402 settlement."""

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from gateway.api.exceptions import SettlementError
from gateway.services.payment_signature import X402_VERSION, PaymentRequirements

logger = logging.getLogger(__name__)


class SettlementResponse(BaseModel):
    """Facilitator ``/settle`` response."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    success: bool
    transaction: str | None = None
    network: str | None = None
    payer: str | None = None
    error_reason: str | None = Field(default=None, alias="errorReason")


class FacilitatorClient:
    """Submits signed payment payloads to a settlement facilitator.

    One attempt per call; the caller decides what a failure means.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 20.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http = http_client

    async def settle(
        self,
        payment_payload: dict[str, Any],
        requirements: PaymentRequirements,
        timeout: float | None = None,
    ) -> SettlementResponse:
        """Settle ``payment_payload`` against ``requirements``.

        ``timeout`` overrides the client default for this call.

        Raises:
            SettlementError: Network failure, timeout, non-2xx status,
                malformed body, or ``success`` not true.
        """
        timeout = self._timeout if timeout is None else timeout
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": payment_payload,
            "paymentRequirements": requirements.to_wire(),
        }

        try:
            if self._http is not None:
                response = await self._http.post(f"{self._base_url}/settle", json=body, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(f"{self._base_url}/settle", json=body)
        except httpx.TimeoutException as e:
            raise SettlementError(f"Facilitator timed out after {timeout:.1f}s") from e
        except httpx.HTTPError as e:
            raise SettlementError(f"Facilitator request failed: {e}") from e

        if response.status_code >= 400:
            raise SettlementError(f"Facilitator returned HTTP {response.status_code}")

        try:
            result = SettlementResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise SettlementError(f"Malformed facilitator response: {e}") from e

        if not result.success:
            raise SettlementError(result.error_reason or "Settlement was not successful")

        logger.info(
            "Settlement confirmed",
            extra={"transaction": result.transaction, "network": result.network},
        )
        return result
