"""
Bank Connection Routes

User-facing endpoints for:
- Connecting a bank through the aggregator's OAuth flow
- OAuth callback handling
- Syncing transactions
- Balances
- Disconnecting
"""

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from backend.app import schemas
from backend.app.auth import get_current_user_id
from backend.app.bank_integration.exceptions import (
    AggregatorError, CsrfStateError, SyncTimeoutError, TokenExchangeError,
    TokenExpiredError, UnsupportedProviderError
)
from backend.app.bank_integration.reconciler import SyncResult
from backend.app.bank_integration.service import BankIntegrationService
from backend.config import get_settings
from backend.database import SessionLocal, get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/banks", tags=["banks"])


def get_bank_service(provider: str, db: Session = Depends(get_db)) -> BankIntegrationService:
    try:
        return BankIntegrationService(db, provider)
    except UnsupportedProviderError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def token_expired_response(e: TokenExpiredError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": "token_expired", "message": str(e), "requires_reconnect": True}
    )


def frontend_redirect(**params) -> RedirectResponse:
    frontend_url = get_settings().frontend_url.rstrip("/")
    return RedirectResponse(url=f"{frontend_url}/?{urlencode(params)}")


def sync_summary(result: SyncResult, mode: str) -> schemas.SyncSummary:
    return schemas.SyncSummary(
        mode=mode,
        accounts=result.accounts,
        inserted=result.inserted,
        skipped=result.skipped,
        date_range=schemas.DateRange(**result.date_range),
        failed_accounts=[
            schemas.FailedAccount(account_id=f.account_id, stage=f.stage, reason=f.reason)
            for f in result.failed_accounts
        ]
    )


async def run_initial_sync(provider: str, user_id: str) -> None:
    """
    Quick sync (balances + recent transactions) followed by full history.

    Runs after the callback response is sent, with its own session.
    """
    db = SessionLocal()
    try:
        service = BankIntegrationService(db, provider)

        try:
            result = await service.quick_sync(user_id)
            logger.info(f"Background quick sync for {user_id} complete: {result.inserted} new")
        except Exception as e:
            logger.error(f"Background quick sync failed for {user_id}: {e}")

        try:
            result = await service.sync(user_id)
            logger.info(f"Background full sync for {user_id} complete: {result.inserted} new")
        except Exception as e:
            logger.error(f"Background full sync failed for {user_id}: {e}")
    finally:
        db.close()


@router.get("/{provider}/connect", response_model=schemas.ConnectResponse)
async def connect(
    service: BankIntegrationService = Depends(get_bank_service),
    user_id: str = Depends(get_current_user_id)
):
    """
    Start the connect flow.

    Returns the aggregator authorization URL the frontend should redirect to.
    """
    url = await service.start_connect(user_id)
    return {"url": url}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    background_tasks: BackgroundTasks,
    code: Optional[str] = Query(None, description="Authorization code"),
    state: Optional[str] = Query(None, description="CSRF state token"),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    service: BankIntegrationService = Depends(get_bank_service)
):
    """
    OAuth callback endpoint.

    Aggregator redirects the user here after authorization. Tokens are stored,
    the user is sent back to the frontend immediately and the initial sync
    runs in the background.
    """
    if error:
        logger.error(f"{provider} OAuth error: {error} {error_description or ''}")
        await service.state_broker.validate(state)
        return frontend_redirect(bankError=error)

    if not state:
        return frontend_redirect(bankError="missing_state")

    if not code:
        # Still consume the state so it cannot be replayed
        await service.state_broker.validate(state)
        return frontend_redirect(bankError="missing_code")

    try:
        user_id = await service.handle_callback(code, state)
    except CsrfStateError:
        return frontend_redirect(bankError="invalid_state")
    except TokenExchangeError as e:
        logger.error(f"{provider} token exchange failed: {e}")
        return frontend_redirect(bankError="token_exchange_failed")
    except (AggregatorError, httpx.HTTPError) as e:
        logger.error(f"{provider} callback failed: {e}")
        return frontend_redirect(bankError="connection_failed")

    background_tasks.add_task(run_initial_sync, provider, user_id)
    return frontend_redirect(bankConnected=1, syncing=1)


@router.get("/{provider}/status", response_model=schemas.ConnectionStatus)
def connection_status(
    service: BankIntegrationService = Depends(get_bank_service),
    user_id: str = Depends(get_current_user_id)
):
    return service.get_status(user_id)


@router.post("/{provider}/sync", response_model=schemas.SyncSummary)
async def sync_transactions(
    request: Optional[schemas.SyncRequest] = Body(None),
    mode: str = Query("full", pattern="^(full|quick)$"),
    limit: int = Query(30, ge=1, le=500),
    service: BankIntegrationService = Depends(get_bank_service),
    user_id: str = Depends(get_current_user_id)
):
    """
    Sync transactions from the connected bank.

    Example:
        POST /banks/truelayer/sync
        {"from_date": "2024-01-01", "to_date": "2024-01-31"}

        Response:
        {"success": true, "mode": "full", "accounts": 2, "inserted": 8, "skipped": 0, ...}

    ?mode=quick syncs balances plus the latest `limit` transactions per account.
    """
    try:
        if mode == "quick":
            result = await service.quick_sync(user_id, limit=limit)
        else:
            request = request or schemas.SyncRequest()
            result = await service.sync(user_id, from_date=request.from_date, to_date=request.to_date)
    except TokenExpiredError as e:
        return token_expired_response(e)
    except SyncTimeoutError as e:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(e))
    except (AggregatorError, httpx.HTTPError) as e:
        logger.error(f"Sync failed for user {user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Sync failed: {e}")

    return sync_summary(result, mode)


@router.get("/{provider}/balance", response_model=schemas.BalanceResponse)
async def get_balance(
    service: BankIntegrationService = Depends(get_bank_service),
    user_id: str = Depends(get_current_user_id)
):
    """Live balance from the aggregator, or the stored one if that fails."""
    return await service.get_balance(user_id)


@router.get("/{provider}/balance-cached", response_model=schemas.CachedBalanceResponse)
def get_cached_balance(
    service: BankIntegrationService = Depends(get_bank_service),
    user_id: str = Depends(get_current_user_id)
):
    return service.get_cached_balance(user_id)


@router.delete("/{provider}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(
    service: BankIntegrationService = Depends(get_bank_service),
    user_id: str = Depends(get_current_user_id)
):
    """Disconnect the bank. Synced transactions are kept."""
    await service.disconnect(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
