"""FastAPI dependencies for dependency injection"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, get_settings
from .security import CryptoService, get_crypto_service, verify_token
from ..db.database import get_db
from ..services.opportunity_service import OpportunityService, get_opportunity_service
from ..services.protocols import AdapterRegistry
from ..services.rate_limiter import TransferRateLimiter, get_rate_limiter
from ..services.relay_client import RelayClient, get_relay_client

logger = logging.getLogger(__name__)

# Bearer scheme; the token's ``sub`` is the wallet address
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_wallet(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
) -> str:
    """
    Dependency to get the authenticated wallet address from a JWT.

    Raises:
        HTTPException 401: If token is missing or invalid
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        token_data = verify_token(credentials.credentials, token_type="access")
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token_data.sub


async def get_transfer_rate_limiter() -> TransferRateLimiter:
    """Process-wide transfer limiter on the configured backend"""
    return await get_rate_limiter()


def get_adapter_registry() -> AdapterRegistry:
    return AdapterRegistry()


# Type aliases for cleaner dependency injection
SettingsDep = Annotated[Settings, Depends(get_settings)]
CryptoDep = Annotated[CryptoService, Depends(get_crypto_service)]
CurrentWalletDep = Annotated[str, Depends(get_current_wallet)]
DbSessionDep = Annotated[AsyncSession, Depends(get_db)]
RateLimiterDep = Annotated[TransferRateLimiter, Depends(get_transfer_rate_limiter)]
OpportunityServiceDep = Annotated[OpportunityService, Depends(get_opportunity_service)]
RelayClientDep = Annotated[RelayClient, Depends(get_relay_client)]
AdapterRegistryDep = Annotated[AdapterRegistry, Depends(get_adapter_registry)]
