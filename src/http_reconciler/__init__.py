"""Declarative reconciler for HTTP-backed external resources."""

__version__ = "0.1.0"
