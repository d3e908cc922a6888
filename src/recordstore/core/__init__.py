"""Store implementations, logging, and metrics."""
