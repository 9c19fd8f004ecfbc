import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from .messages import ConnectedMessage
from .relay import RelayHub
from .tokens import TokenStore

logger = logging.getLogger(__name__)

PURGE_INTERVAL_SECONDS = 30

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


# --- Models ---
class StoreRequest(BaseModel):
    token: Optional[str] = None


class StoreResponse(BaseModel):
    id: str


async def _purge_periodically(store: TokenStore, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        store.purge_expired()


def create_app(
    token_store: Optional[TokenStore] = None,
    hub: Optional[RelayHub] = None,
    purge_interval: float = PURGE_INTERVAL_SECONDS,
) -> FastAPI:
    """Build the signaling app around the given (or fresh) in-memory stores."""
    tokens = token_store if token_store is not None else TokenStore()
    relay = hub if hub is not None else RelayHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        purger = asyncio.create_task(_purge_periodically(tokens, purge_interval))
        try:
            yield
        finally:
            logger.info("Shutdown initiated")
            purger.cancel()
            with suppress(asyncio.CancelledError):
                await purger
            for conn in relay.snapshot():
                with suppress(Exception):
                    await conn.close(code=1001)
                relay.remove(conn)

    app = FastAPI(title="beamdrop signaling", lifespan=lifespan)
    app.state.tokens = tokens
    app.state.hub = relay

    # --- Endpoints ---
    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "clients": len(relay),
            "tokens": len(tokens),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/store", response_model=StoreResponse)
    def store(req: StoreRequest):
        if not req.token:
            raise HTTPException(400, "Missing token")
        return StoreResponse(id=tokens.store(req.token))

    @app.get("/t/{token_id}", response_class=HTMLResponse)
    def reveal_page(request: Request, token_id: str):
        """Show the reveal page; the token is only consumed by its button."""
        if not tokens.contains(token_id):
            return templates.TemplateResponse(
                request, "expired.html", {}, status_code=404
            )
        return templates.TemplateResponse(
            request, "reveal.html", {"token_id": token_id}
        )

    @app.get("/consume/{token_id}")
    def consume(token_id: str):
        payload = tokens.consume(token_id)
        if payload is None:
            return {"error": "expired"}
        return {"token": payload}

    @app.websocket("/ws")
    async def relay_socket(websocket: WebSocket):
        await websocket.accept()
        relay.add(websocket)
        logger.info("New client connected: %s", websocket.client)
        try:
            await relay.send(websocket, ConnectedMessage())
            while websocket.client_state == WebSocketState.CONNECTED:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info("Client disconnected. code=%s", message.get("code"))
                    break
                raw = message.get("text")
                if raw is None:
                    raw = (message.get("bytes") or b"").decode("utf-8", "replace")
                await relay.dispatch(websocket, raw)
        except Exception as e:
            logger.error("WebSocket error (client): %s", e)
        finally:
            relay.remove(websocket)

    return app


app = create_app()
