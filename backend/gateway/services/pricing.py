"""Model pricing, usage cost and route payment requirements.

Prices are USD per million tokens. Usage costs stay in Decimal dollars;
conversion to USDC atomic units happens only when a payment requirement is
built for a caller.
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal

from gateway.config import Settings
from gateway.services.payment_signature import PaymentRequirements

TOKENS_PER_UNIT = Decimal(1_000_000)
USDC_DECIMALS = 6
COMMISSION_RATE = Decimal("0.10")

CHAT_ROUTE = "/v1/chat/completions"
DEBT_ROUTE = "/v1/debt"

# Flat price quoted to callers without a credential
ROUTE_PRICES = {
    CHAT_ROUTE: Decimal("0.01"),
}


@dataclass(frozen=True)
class ModelPricing:
    input: Decimal
    output: Decimal


PRICING: dict[str, ModelPricing] = {
    # Claude models
    "anthropic/claude-opus-4.5": ModelPricing(Decimal("15"), Decimal("75")),
    "anthropic/claude-sonnet-4.5": ModelPricing(Decimal("3"), Decimal("15")),
    "anthropic/claude-haiku-4.5": ModelPricing(Decimal("0.25"), Decimal("1.25")),
    # Gemini models
    "google/gemini-3-pro-preview": ModelPricing(Decimal("2"), Decimal("12")),
    "google/gemini-3-flash-preview": ModelPricing(Decimal("0.5"), Decimal("3")),
}


@dataclass(frozen=True)
class CostBreakdown:
    base_cost: Decimal
    commission: Decimal
    total_cost: Decimal


def is_priced_model(model: str) -> bool:
    return model in PRICING


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> CostBreakdown:
    """Cost of one exchange: base token cost plus commission.

    Raises:
        ValueError: Model has no pricing entry.
    """
    pricing = PRICING.get(model)
    if pricing is None:
        raise ValueError(f"Unsupported model for pricing: {model}")

    input_cost = Decimal(prompt_tokens) / TOKENS_PER_UNIT * pricing.input
    output_cost = Decimal(completion_tokens) / TOKENS_PER_UNIT * pricing.output
    base_cost = input_cost + output_cost
    commission = base_cost * COMMISSION_RATE
    return CostBreakdown(
        base_cost=base_cost,
        commission=commission,
        total_cost=base_cost + commission,
    )


def to_atomic_units(amount: Decimal | str) -> str:
    """Dollar amount → USDC atomic units, rounded up to the smallest unit."""
    scaled = (Decimal(amount) * (10 ** USDC_DECIMALS)).to_integral_value(rounding=ROUND_CEILING)
    return str(max(int(scaled), 0))


def route_price(route: str, debt: Decimal | None = None) -> Decimal:
    """Dollar price quoted for ``route``.

    The debt route is priced at the caller's outstanding debt.
    """
    if route == DEBT_ROUTE:
        return debt if debt is not None else Decimal(0)
    return ROUTE_PRICES.get(route, ROUTE_PRICES[CHAT_ROUTE])


def build_requirements(settings: Settings, price: Decimal) -> PaymentRequirements:
    """Exact-scheme USDC requirement for ``price`` dollars."""
    return PaymentRequirements(
        scheme="exact",
        network=settings.network,
        amount=to_atomic_units(price),
        asset=settings.asset,
        pay_to=settings.pay_to,
        max_timeout_seconds=300,
        extra={"name": settings.asset_domain_name, "version": "2"},
    )
