"""User store factory — backend selection and initialization.

Backend selection (store.backend in config):
  - "sqlite" (default) → SQLiteUserStore at store.path (CREDKEEPER_DB_PATH overrides)
  - "memory"           → InMemoryUserStore; all accounts are lost on restart

PRAGMA version guard:
  SQLiteUserStore.initialize() raises RuntimeError if PRAGMA user_version is
  not 0 (fresh) or 1 (expected). The FastAPI lifespan propagates this
  RuntimeError to refuse startup.
"""

from __future__ import annotations

from credkeeper.config import Config
from credkeeper.store.protocol import UserStore
from credkeeper.utils.logger import get_logger

logger = get_logger(__name__)


async def create_user_store(config: Config) -> UserStore:
    """Create and initialize the configured user store.

    Raises:
      RuntimeError: If SQLiteUserStore.initialize() finds an incompatible
                    schema version. Propagated to FastAPI lifespan → startup refused.
    """
    if config.store.backend == "memory":
        return await _create_memory_store()
    return await _create_sqlite_store(config.store.path)


async def _create_memory_store() -> UserStore:
    from credkeeper.store.memory import InMemoryUserStore

    store = InMemoryUserStore()
    await store.initialize()
    logger.warning(
        "user_store_selected",
        backend="InMemoryUserStore",
        note="accounts, keys and outstanding tokens are lost on restart",
    )
    return store


async def _create_sqlite_store(db_path: str) -> UserStore:
    from credkeeper.store.sqlite_store import SQLiteUserStore

    store = SQLiteUserStore(db_path=db_path)
    await store.initialize()
    logger.info("user_store_selected", backend="SQLiteUserStore", db_path=db_path)
    return store
