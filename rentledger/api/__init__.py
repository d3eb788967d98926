"""HTTP API for payment ingestion and ledger reads."""
