"""Main application entry point."""

import logging
import os

from dotenv import load_dotenv

# Load environment variables before settings are first read
load_dotenv()

import uvicorn  # noqa: E402

from rentledger.api.app import app  # noqa: E402

logger = logging.getLogger(__name__)


def main() -> None:
    """Serve the API with uvicorn."""
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting RentLedger API on %s:%s", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
