"""Server entry point: ``python -m bgsource.core.server.main``.

Also installed as the ``bgsource-server`` console script.
"""

from __future__ import annotations

import logging
from ipaddress import ip_address

from bgsource.core.config.settings import Settings, get_settings
from bgsource.core.server.app import SERVER_NAME, create_app

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _is_loopback_host(host: str) -> bool:
    host = host.strip().strip("[]")
    if host.lower() == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def _check_bind(settings: Settings) -> None:
    """Refuse to expose glucose data beyond this machine unless told to."""
    if settings.bgs_allow_insecure_bind or _is_loopback_host(settings.bgs_host):
        return
    raise RuntimeError(
        f"{settings.bgs_host!r} is not a loopback address and the glucose source server "
        "has no auth layer. Bind to 127.0.0.1, or set BGS_ALLOW_INSECURE_BIND=true "
        "to expose it anyway (unsafe)."
    )


def _log_level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def run() -> None:
    """Start the glucose source MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(level=_log_level(settings.bgs_log_level), format=_LOG_FORMAT)
    logger = logging.getLogger(__name__)

    _check_bind(settings)
    logger.info(
        "Starting %s on %s:%d (feed=%s, collection=%s, mode=%s)",
        SERVER_NAME,
        settings.bgs_host,
        settings.bgs_port,
        settings.feed_backend,
        settings.feed_collection,
        settings.execution_mode,
    )

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.bgs_host,
        port=settings.bgs_port,
    )


if __name__ == "__main__":
    run()
