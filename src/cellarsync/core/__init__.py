"""Cross-cutting infrastructure: structured logging and Prometheus metrics."""
