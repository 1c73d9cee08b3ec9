"""ingest-foundry: rate-governed, resilient batch ingestion from metered APIs."""

__version__ = "1.0.0"
