"""Gateway configuration loaded from environment variables."""

import os
from dataclasses import dataclass

# EIP-155 network identifiers per chain environment
NETWORKS = {
    "testnet": "eip155:84532",
    "mainnet": "eip155:8453",
}

# USDC contract addresses per network
USDC_ADDRESSES = {
    "eip155:84532": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
    "eip155:8453": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
}

# EIP-712 domain for the USDC contract (name differs per network)
USDC_DOMAIN_NAMES = {
    "eip155:84532": "USDC",
    "eip155:8453": "USD Coin",
}

DEFAULT_PAY_TO = "0x5Ba55eaBD43743Ef6bB6285f393fA3CbA33FbA5e"
DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"
MIN_JWT_SECRET_LENGTH = 32


class ConfigError(ValueError):
    """Raised when a required setting is missing or malformed."""


def cors_origins_from_env() -> list[str]:
    """Comma-separated ``CORS_ORIGINS``, read when the app module is imported.

    CORS middleware is installed before the lifespan loads ``Settings``.
    """
    origins = os.getenv("CORS_ORIGINS", "*")
    return [origin.strip() for origin in origins.split(",") if origin.strip()]


@dataclass
class Settings:
    """Gateway settings.

    Load with ``Settings.from_env()``; tests construct it directly.
    """

    jwt_secret: str
    port: int = 8080
    chain_env: str = "testnet"
    rpc_url: str = "https://sepolia.base.org"
    pay_to: str = DEFAULT_PAY_TO
    usdc_address: str | None = None
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    self_base_url: str | None = None
    settlement_timeout: float = 20.0
    max_tool_rounds: int = 10
    mcp_servers_file: str | None = None
    anthropic_api_key: str | None = None
    gemini_api_key: str | None = None
    llm_timeout: float = 60.0

    def __post_init__(self) -> None:
        if len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH:
            raise ConfigError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        if self.chain_env not in NETWORKS:
            raise ConfigError(
                f"CHAIN_ENV must be one of {sorted(NETWORKS)}, got '{self.chain_env}'"
            )

    @property
    def network(self) -> str:
        """x402 network identifier for the configured chain."""
        return NETWORKS[self.chain_env]

    @property
    def asset(self) -> str:
        """Payment asset contract (USDC unless overridden)."""
        return self.usdc_address or USDC_ADDRESSES[self.network]

    @property
    def asset_domain_name(self) -> str:
        return USDC_DOMAIN_NAMES[self.network]

    @property
    def base_url(self) -> str:
        """URL the gateway uses to call its own pricing endpoint."""
        return self.self_base_url or f"http://localhost:{self.port}"

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        jwt_secret = os.getenv("JWT_SECRET")
        if not jwt_secret:
            raise ConfigError("JWT_SECRET environment variable is required")

        return cls(
            jwt_secret=jwt_secret,
            port=int(os.getenv("PORT", "8080")),
            chain_env=os.getenv("CHAIN_ENV", "testnet").lower(),
            rpc_url=os.getenv("RPC_URL", "https://sepolia.base.org"),
            pay_to=os.getenv("PAY_TO", DEFAULT_PAY_TO),
            usdc_address=os.getenv("USDC_ADDRESS"),
            facilitator_url=os.getenv("FACILITATOR_URL", DEFAULT_FACILITATOR_URL),
            self_base_url=os.getenv("SELF_BASE_URL"),
            settlement_timeout=float(os.getenv("SETTLEMENT_TIMEOUT_SECONDS", "20")),
            max_tool_rounds=int(os.getenv("MAX_TOOL_ROUNDS", "10")),
            mcp_servers_file=os.getenv("MCP_SERVERS_FILE"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
            llm_timeout=float(os.getenv("LLM_TIMEOUT_SECONDS", "60")),
        )
