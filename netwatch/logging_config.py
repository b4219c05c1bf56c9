"""Logging setup shared by the API process and the standalone collector."""

import logging
from typing import Iterable

# Routes the dashboard polls every few seconds
QUIET_ROUTES = ("/health", "/engine/status")


class QuietRoutesFilter(logging.Filter):
    """
    Drop uvicorn access-log lines for successful GETs of polled routes.

    Works on the structured record args uvicorn passes
    (client, method, path, http_version, status), so a route that merely
    contains "/health" in its query string is still logged.
    """

    def __init__(self, routes: Iterable[str] = QUIET_ROUTES):
        super().__init__()
        self.routes = frozenset(routes)

    def filter(self, record: logging.LogRecord) -> bool:
        args = record.args
        if not isinstance(args, tuple) or len(args) < 5:
            return True
        method, path, status = args[1], str(args[2]), args[4]
        path = path.split("?", 1)[0]
        if method == "GET" and path in self.routes and str(status).startswith("2"):
            return False
        return True


def configure_logging(level: str = "INFO", quiet_routes: Iterable[str] = QUIET_ROUTES) -> None:
    """Configure root logging for the engine and its API."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logging.getLogger("uvicorn.access").addFilter(QuietRoutesFilter(quiet_routes))

    # Both are chatty at DEBUG and add nothing at INFO
    for name in ("pysnmp", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)
