"""FastAPI dependencies shared by the routers (overridden in tests)."""

from rentledger.services import SessionLocal
from rentledger.services.config import Settings, get_settings
from rentledger.services.mpesa_client import MpesaClient, get_mpesa_client
from rentledger.services.posting_dispatcher import (
    PostingDispatcher,
    get_posting_dispatcher,
    init_posting_dispatcher,
)


def get_app_settings() -> Settings:
    return get_settings()


def get_dispatcher() -> PostingDispatcher:
    """Posting dispatcher started by the lifespan, or created on first use."""
    try:
        return get_posting_dispatcher()
    except RuntimeError:
        return init_posting_dispatcher(SessionLocal, get_settings())


def get_mpesa() -> MpesaClient:
    return get_mpesa_client()
