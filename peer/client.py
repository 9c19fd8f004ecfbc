import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx
import typer

from .api_client import DEFAULT_SERVER
from .errors import HandshakeError, TokenExpiredError, TransferError
from .handshake import GATHER_TIMEOUT
from .models import SharedToken
from .p2p_ops import receive_file, share_file
from .storage import ensure_storage_dir, format_file_size, validate_file_path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

app = typer.Typer(help="Serverless peer-to-peer file transfer over WebRTC")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT
    )


def _show_token(token: SharedToken) -> None:
    if token.shortened:
        typer.echo(f"Short link (one-time use): {token.text}")
    else:
        typer.echo("Failed to shorten token, showing full token:")
        typer.echo(token.text)


def _progress_printer():
    last = [-1]

    def report(percent: float) -> None:
        rounded = int(percent)
        if rounded != last[0]:
            last[0] = rounded
            typer.echo(f"\r{rounded}%", nl=rounded >= 100)

    return report


def _run(coro):
    try:
        return asyncio.run(coro)
    except TokenExpiredError:
        typer.echo("Token expired or already used")
        raise typer.Exit(1)
    except (HandshakeError, TransferError) as e:
        typer.echo(f"P2P error: {e}")
        raise typer.Exit(1)
    except asyncio.TimeoutError:
        typer.echo("P2P error: timed out waiting for the other peer")
        raise typer.Exit(1)
    except (OSError, httpx.HTTPError) as e:
        typer.echo(f"P2P error: {e}")
        raise typer.Exit(1)


@app.command()
def share(
    file_path: Path = typer.Argument(..., help="File to send (one file per session)"),
    server: str = typer.Option(DEFAULT_SERVER, help="Signaling server URL"),
    relay: Optional[str] = typer.Option(None, help="Relay WebSocket URL (default: <server>/ws)"),
    gather_timeout: float = typer.Option(GATHER_TIMEOUT, help="Seconds to wait for ICE gathering"),
) -> None:
    """Create an offer, wait for the answer and send a file."""
    try:
        validate_file_path(file_path)
    except OSError as e:
        typer.echo(str(e))
        raise typer.Exit(1)
    typer.echo(f"Selected {file_path.name} ({format_file_size(file_path.stat().st_size)})")

    async def ask_for_answer() -> str:
        return await asyncio.to_thread(
            typer.prompt, "Paste the answer token or short link"
        )

    sent = _run(
        share_file(
            file_path,
            server,
            ask_for_answer,
            on_token=_show_token,
            relay_url=relay,
            gather_timeout=gather_timeout,
            on_progress=_progress_printer(),
        )
    )
    typer.echo(f"File sent! ({format_file_size(sent)})")


@app.command()
def receive(
    token: str = typer.Argument(..., help="Offer short link, URL with ?token= or raw offer JSON"),
    storage_dir: Path = typer.Option(Path("."), help="Folder for the received file"),
    server: str = typer.Option(DEFAULT_SERVER, help="Signaling server URL"),
    relay: Optional[str] = typer.Option(None, help="Relay WebSocket URL (default: <server>/ws)"),
    gather_timeout: float = typer.Option(GATHER_TIMEOUT, help="Seconds to wait for ICE gathering"),
) -> None:
    """Answer an offer and save the file the other peer sends."""
    ensure_storage_dir(storage_dir)

    def show_answer(shared: SharedToken) -> None:
        typer.echo("Answer created. Send it to the initiator.")
        _show_token(shared)

    saved = _run(
        receive_file(
            token,
            server,
            storage_dir,
            on_token=show_answer,
            relay_url=relay,
            gather_timeout=gather_timeout,
            on_progress=_progress_printer(),
        )
    )
    typer.echo(f"File received: {saved}")


if __name__ == "__main__":
    app()
