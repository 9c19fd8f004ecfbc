import logging
from typing import Optional
from urllib.parse import parse_qs, unquote, urlparse

import httpx

from signaling.messages import SessionDescription

from .errors import TokenExpiredError
from .models import SharedToken

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "http://localhost:3000"
SHORT_LINK_PREFIX = "/t/"


async def store_token(token: str, server: str) -> str:
    async with httpx.AsyncClient() as client:
        response = await client.post(f"{server}/store", json={"token": token})
        response.raise_for_status()
        return response.json()["id"]


async def consume_token(token_id: str, server: str) -> str:
    """Read a stored token; the server deletes it on success."""
    async with httpx.AsyncClient() as client:
        response = await client.get(f"{server}/consume/{token_id}")
        response.raise_for_status()
        body = response.json()
    if "token" not in body:
        raise TokenExpiredError("Token expired or already used")
    return body["token"]


def short_link(token_id: str, server: str) -> str:
    return f"{server.rstrip('/')}{SHORT_LINK_PREFIX}{token_id}"


def parse_short_link(text: str) -> Optional[tuple]:
    """Return ``(origin, token_id)`` for a ``/t/<id>`` link, else None."""
    parsed = urlparse(text)
    if not parsed.scheme or not parsed.netloc:
        return None
    if not parsed.path.startswith(SHORT_LINK_PREFIX):
        return None
    token_id = parsed.path[len(SHORT_LINK_PREFIX):].strip("/")
    if not token_id:
        return None
    return f"{parsed.scheme}://{parsed.netloc}", token_id


async def publish_description(description: SessionDescription, server: str) -> SharedToken:
    """Store a description and return its short link.

    Falls back to the raw JSON when the token store cannot be reached, so the
    handshake never blocks on it.
    """
    payload = description.model_dump_json()
    try:
        token_id = await store_token(payload, server)
    except (httpx.HTTPError, KeyError, ValueError) as e:
        logger.warning("Failed to shorten token, presenting full token: %s", e)
        return SharedToken(text=payload, shortened=False)
    return SharedToken(text=short_link(token_id, server), shortened=True)


async def resolve_token(text: str) -> str:
    """Turn scanned, pasted or URL-parameter input into description JSON.

    ``?token=`` parameters are unwrapped and ``/t/<id>`` links are consumed
    through the origin they point at; anything else is returned as-is.
    """
    text = text.strip()
    if text.startswith("{"):
        return text
    parsed = urlparse(text)
    if not (parsed.scheme and parsed.netloc):
        decoded = unquote(text)
        return await resolve_token(decoded) if decoded != text else text
    params = parse_qs(parsed.query)
    if "token" in params:
        return await resolve_token(params["token"][0])
    link = parse_short_link(text)
    if link is None:
        return text
    origin, token_id = link
    return await consume_token(token_id, origin)
