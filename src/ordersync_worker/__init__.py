"""Order sync worker: ingestion, reconciliation, webhooks and scheduling."""
