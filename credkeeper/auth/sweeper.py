"""Background sweep of expired in-memory credential state.

run_credential_sweeper() removes expired CSRF entries and elapsed cooldown
stamps on a fixed interval. Registered with asyncio.create_task() during the
FastAPI lifespan startup; cancelled cleanly on shutdown via task.cancel().

Retry policy:
  - asyncio.CancelledError → re-raised (expected on shutdown)
  - any other exception    → logged at ERROR, retried next interval
"""

from __future__ import annotations

import asyncio

from credkeeper.auth.csrf import CsrfTokenStore
from credkeeper.auth.keys import CooldownTracker
from credkeeper.constants import CSRF_SWEEP_INTERVAL_SECONDS
from credkeeper.utils.logger import get_logger

logger = get_logger(__name__)


def sweep_once(csrf: CsrfTokenStore, cooldown: CooldownTracker) -> tuple[int, int]:
    """Run one sweep. Returns (csrf_entries_removed, cooldown_stamps_removed)."""
    return csrf.sweep(), cooldown.prune()


async def run_credential_sweeper(
    csrf: CsrfTokenStore,
    cooldown: CooldownTracker,
    interval_seconds: float = CSRF_SWEEP_INTERVAL_SECONDS,
) -> None:
    """Sweep forever, sleeping interval_seconds between passes. Never blocks the loop."""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            csrf_removed, stamps_removed = sweep_once(csrf, cooldown)
            logger.info(
                "credential_sweep_complete",
                csrf_removed=csrf_removed,
                cooldown_removed=stamps_removed,
            )

        except asyncio.CancelledError:
            logger.info("credential_sweeper_cancelled")
            raise

        except Exception as exc:
            logger.error(
                "credential_sweep_error",
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=interval_seconds,
            )
