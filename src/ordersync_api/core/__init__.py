"""Core utilities: logging, monitoring, errors, rate limiting."""
