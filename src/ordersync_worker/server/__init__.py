"""HTTP surface of the worker."""
