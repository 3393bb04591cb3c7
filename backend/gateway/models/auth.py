"""Pydantic models for session-key authorization."""

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, Field

EthereumAddress = Annotated[str, Field(pattern=r"^0x[a-fA-F0-9]{40}$")]


class AuthorizeRequest(BaseModel):
    """Request body for delegating a session key to the gateway."""

    smartAccountAddress: EthereumAddress
    privateKey: Annotated[str, Field(min_length=1)]
    serializedSessionKey: Annotated[str, Field(min_length=1)]
    eoaAddress: EthereumAddress
    chainId: Annotated[int, Field(gt=0)]
    nonce: Annotated[int, Field(ge=0)]


class AuthorizeResponse(BaseModel):
    token: str
    sessionKeyId: str


class SessionClaims(BaseModel):
    """Payload of a gateway session token."""

    userId: str
    sessionKeyId: str
    walletAddress: str
    chainId: int


class SessionKeyRecord(BaseModel):
    """Delegated signer stored for a user."""

    id: str
    userId: str
    smartAccountAddress: str
    privateKey: str
    serializedSessionKey: str
    eoaAddress: str | None = None
    chainId: int
    createdAt: datetime | None = None
