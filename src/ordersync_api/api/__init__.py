"""Upstream API clients (storefront sources and carriers)."""
