"""
Periodic Sync

Background sync of every active connection, run from the FastAPI lifespan.
Each connection is synced with its own database session so one user's
failure never affects another's.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from backend.config import Settings

from .exceptions import BankIntegrationError
from .service import BankIntegrationService
from .store import ConnectionStore

logger = logging.getLogger(__name__)


async def sync_all_connections(
    session_factory: Callable[[], Session],
    settings: Settings,
    service_factory: Optional[Callable] = None
) -> Dict[str, int]:
    """
    Sync every ACTIVE connection once.

    Args:
        session_factory: Creates a new Session (e.g. SessionLocal)
        settings: Application settings
        service_factory: Builds the service for (db, provider, settings);
            defaults to BankIntegrationService

    Returns:
        {'synced': int, 'failed': int}
    """
    service_factory = service_factory or BankIntegrationService

    db = session_factory()
    try:
        targets = [(c.user_id, c.provider) for c in ConnectionStore(db).list_active_connections()]
    finally:
        db.close()

    logger.info(f"Auto-sync: {len(targets)} active connection(s)")
    summary = {'synced': 0, 'failed': 0}

    for user_id, provider in targets:
        db = session_factory()
        try:
            service = service_factory(db, provider, settings)
            result = await service.sync(user_id)
            summary['synced'] += 1
            logger.info(f"Auto-sync {provider}/{user_id}: {result.inserted} new, {result.skipped} existing")
        except BankIntegrationError as e:
            summary['failed'] += 1
            logger.warning(f"Auto-sync failed for {provider}/{user_id}: {e}")
        except Exception as e:
            summary['failed'] += 1
            logger.error(f"Auto-sync crashed for {provider}/{user_id}: {e}", exc_info=True)
        finally:
            db.close()

    return summary


async def periodic_sync_loop(session_factory: Callable[[], Session], settings: Settings) -> None:
    """Run sync_all_connections every AUTO_SYNC_INTERVAL_MINUTES until cancelled."""
    interval = settings.auto_sync_interval_minutes * 60
    logger.info(f"Auto-sync enabled every {settings.auto_sync_interval_minutes} minutes")

    while True:
        await asyncio.sleep(interval)
        try:
            await sync_all_connections(session_factory, settings)
        except Exception as e:
            logger.error(f"Auto-sync run failed: {e}", exc_info=True)
