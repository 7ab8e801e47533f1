"""Cross-cutting infrastructure: logging, resilience, error tracking."""
