"""Background services: ingestion, uploads, model invocation."""
