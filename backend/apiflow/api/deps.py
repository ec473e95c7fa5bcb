"""
API Dependencies: DB session and the run orchestrator.

Request-scoped sessions are only used for reads. Runs write through the
orchestrator's own session factory, so a client disconnect never rolls back
recorded step progress.
"""

import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from apiflow.database import async_session
from apiflow.services.run_orchestrator import RunOrchestrator

logger = logging.getLogger(__name__)


# ── Database session ─────────────────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session per request, commit on success, rollback on error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Orchestrator ─────────────────────────────────────────────────────────────

def get_orchestrator() -> RunOrchestrator:
    return RunOrchestrator(session_factory=async_session)
