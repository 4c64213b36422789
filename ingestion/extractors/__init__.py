"""Upstream API access: retrying transport, envelope normalization, page fetcher."""
