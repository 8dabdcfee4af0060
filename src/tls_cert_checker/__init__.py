"""Retrieve, classify and validate TLS certificate chains."""

__version__ = "0.9.0"
