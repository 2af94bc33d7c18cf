"""Transfer routes - manual stable-asset sends through a transfer-only session"""

import functools
import logging
from typing import Optional, Union

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from ...core.dependencies import (
    CryptoDep,
    CurrentWalletDep,
    DbSessionDep,
    RateLimiterDep,
    RelayClientDep,
)
from ...core.errors import (
    ErrorCode,
    RateLimitExceeded,
    SessionError,
    app_error_to_http,
    create_http_exception,
)
from ...models.session import SessionCreated, SessionType
from ...services.delegated_executor import DelegatedExecutor
from ...services.session_service import SessionService, decrypt_signer
from ...services.transfer_service import TransferService

router = APIRouter(prefix="/transfers", tags=["Transfers"])
logger = logging.getLogger(__name__)


class TransferRequest(BaseModel):
    recipient: Optional[str] = None
    amount: Union[str, float] = Field(..., description="USD amount, e.g. \"25.00\"")


class TransferResponse(BaseModel):
    success: bool
    tx_hash: Optional[str] = None
    simulated: bool = False


@router.post("/session", response_model=SessionCreated, status_code=status.HTTP_201_CREATED)
async def create_transfer_session(
    db: DbSessionDep,
    wallet: CurrentWalletDep,
    crypto: CryptoDep,
):
    """Create (or replace) the transfer-only session"""
    return await SessionService(db, crypto).create_session(wallet, SessionType.TRANSFER)


@router.delete("/session")
async def revoke_transfer_session(
    db: DbSessionDep,
    wallet: CurrentWalletDep,
    crypto: CryptoDep,
):
    removed = await SessionService(db, crypto).revoke_session(wallet, SessionType.TRANSFER)
    return {"revoked": removed}


@router.post("", response_model=TransferResponse)
async def create_transfer(
    data: TransferRequest,
    db: DbSessionDep,
    wallet: CurrentWalletDep,
    crypto: CryptoDep,
    limiter: RateLimiterDep,
    relay: RelayClientDep,
):
    """
    Send the stable asset to ``recipient``.

    400 on invalid parameters or session, 429 when a transfer limit is
    hit, 502 when the sponsored batch fails.
    """
    sessions = SessionService(db, crypto)
    executor = DelegatedExecutor(
        signer_loader=functools.partial(decrypt_signer, crypto=crypto),
        relay=relay,
    )
    service = TransferService(db, sessions, limiter, executor)

    try:
        result = await service.transfer(wallet, data.recipient, data.amount)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (SessionError, RateLimitExceeded) as e:
        raise app_error_to_http(e)

    if not result.success:
        raise create_http_exception(
            ErrorCode.EXECUTION_FAILED,
            f"Transfer failed ({result.error_kind})",
            status_code=status.HTTP_502_BAD_GATEWAY,
            internal_error=Exception(result.error),
        )

    return TransferResponse(
        success=True,
        tx_hash=result.tx_hash,
        simulated=result.simulated,
    )
