"""
Store Factory — Pick the outreach store backend named in settings.

settings.yaml:
    database:
      url: "sqlite:///./outreach.db"    # used by the sql backend
      store_backend: sql                 # sql | memory

The SQL backend reads the engine from database.session, so init_db(url)
must run before the first query. The memory backend keeps everything in
process and is what the tests use.

Usage:
    store = create_store({"store_backend": "memory"})
    store = get_store()      # the instance created above
    reset_store()            # forget it (tests)
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from database.store_base import BaseOutreachStore

logger = structlog.get_logger()

_instance: Optional[BaseOutreachStore] = None


def _sql_store() -> BaseOutreachStore:
    from database.store import SqlOutreachStore
    return SqlOutreachStore()


def _memory_store() -> BaseOutreachStore:
    from database.store_memory import InMemoryOutreachStore
    return InMemoryOutreachStore()


_BACKENDS: dict[str, Callable[[], BaseOutreachStore]] = {
    "sql": _sql_store,
    "memory": _memory_store,
}


def create_store(config: Optional[dict] = None) -> BaseOutreachStore:
    """Build the configured backend once; later calls return the same instance."""
    global _instance
    if _instance is not None:
        return _instance

    backend = (config or {}).get("store_backend", "memory")
    build = _BACKENDS.get(backend)
    if build is None:
        raise ValueError(f"Unknown store backend: {backend!r} (expected one of {sorted(_BACKENDS)})")

    _instance = build()
    logger.info("store_created", backend=backend)
    return _instance


def get_store() -> BaseOutreachStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    global _instance
    _instance = None
