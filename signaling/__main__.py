"""Entry point for launching the signaling server."""
import logging
import os
from typing import Optional, Tuple
from urllib.parse import urlparse

import uvicorn

from .server import create_app
from .tokens import TOKEN_TTL_SECONDS, TokenStore

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("signaling")


def public_urls(external: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Derive the public HTTP and WebSocket URLs from a host or URL."""
    if not external:
        return None, None
    normalized = external if external.startswith("http") else f"https://{external}"
    parsed = urlparse(normalized)
    if not parsed.netloc:
        return normalized, None
    ws_scheme = "wss" if parsed.scheme == "https" else "ws"
    return normalized.rstrip("/"), f"{ws_scheme}://{parsed.netloc}/ws"


def main() -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "3000"))
    ttl = float(os.environ.get("TOKEN_TTL_SECONDS", TOKEN_TTL_SECONDS))

    http_url, ws_url = public_urls(os.environ.get("RENDER_EXTERNAL_URL"))
    logger.info("Server listening on port %d (token TTL %ss)", port, ttl)
    if http_url and ws_url:
        logger.info("Public HTTP: %s", http_url)
        logger.info("Public WebSocket (use wss if site is https): %s", ws_url)
    else:
        logger.info("Public URL not detected in env; peers must be given the server URL")

    uvicorn.run(create_app(token_store=TokenStore(ttl=ttl)), host=host, port=port)


if __name__ == "__main__":
    main()
