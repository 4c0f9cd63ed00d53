"""Entry points for the processes spawned by the API (ingestion, scheduler)."""
