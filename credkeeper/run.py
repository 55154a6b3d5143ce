"""Programmatic uvicorn entry point for credkeeper.

Reads host and port from the loaded config (127.0.0.1:5000 by default) and
starts uvicorn with hardened defaults:

  --limit-concurrency 100  Max 100 concurrent connections; HTTP 503 when exceeded
  --backlog 50             OS connection queue depth; limits SYN flood exposure
  --timeout-keep-alive 5   Reduces Slow Loris attack window

Usage:
    python -m credkeeper.run   # reads .credkeeper/config.yaml
    credkeeper                 # via pyproject.toml [project.scripts]

Binding to 0.0.0.0 is allowed but logs a SECURITY WARNING at startup
(see credkeeper/config.py:load_config).
"""

from __future__ import annotations

import uvicorn

from credkeeper.config import load_config

# ─── Uvicorn hardened defaults ───────────────────────────────────────────────

UVICORN_LIMIT_CONCURRENCY: int = 100

UVICORN_BACKLOG: int = 50

# Low value reduces the Slow Loris attack window.
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start credkeeper with hardened uvicorn defaults.

    Raises:
        SystemExit: Propagated from load_config() on config parse errors.
    """
    config = load_config()

    uvicorn.run(
        "credkeeper.main:app",
        host=config.server.host,
        port=config.server.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
        # credkeeper sets its own request id header; uvicorn's access log stays on
        server_header=False,
    )


if __name__ == "__main__":
    main()
