"""Debt endpoint.

- GET /v1/debt: the caller's outstanding debt

Gated like any metered route, but priced at the caller's own debt: an
unauthenticated request naming a wallet gets a 402 quoting exactly what
that wallet owes. Auto-payment reads its price from here.
"""

from fastapi import APIRouter, Depends, Request

from gateway.api.dependencies import get_access_gate, get_ledger, require_grant
from gateway.api.response import success_response
from gateway.services.access_gate import AccessGate
from gateway.services.debt_ledger import DebtLedger
from gateway.services.pricing import DEBT_ROUTE

router = APIRouter(tags=["Billing"])


@router.get("/debt")
async def get_debt(
    request: Request,
    gate: AccessGate = Depends(get_access_gate),
    ledger: DebtLedger = Depends(get_ledger),
) -> dict:
    grant = await require_grant(request, gate, DEBT_ROUTE)
    status = await ledger.get_debt(grant.wallet_address)
    return success_response({
        "walletAddress": status.wallet_address,
        "currentDebt": format(status.current_debt, "f"),
        "totalSpent": format(status.total_spent, "f"),
        "paymentThreshold": format(status.payment_threshold, "f"),
    })
