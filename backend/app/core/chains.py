"""
Chain client dependencies. Clients are built once in the app lifespan and
read from ``app.state``; tests override these dependencies with fakes.
"""
from fastapi import Request

from app.core.errors import ConfigurationError
from app.services.solana import SolanaClient
from app.services.tron import TronClient


def get_solana_client(request: Request) -> SolanaClient:
    client = getattr(request.app.state, "solana_client", None)
    if client is None:
        raise ConfigurationError("Solana client is not initialised")
    return client


def get_tron_client(request: Request) -> TronClient:
    client = getattr(request.app.state, "tron_client", None)
    if client is None:
        raise ConfigurationError("TRON client is not initialised")
    return client
