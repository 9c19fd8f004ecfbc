"""Entry point for the peer command line."""
from .client import app

if __name__ == "__main__":
    app()
