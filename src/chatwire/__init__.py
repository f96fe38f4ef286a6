"""Streaming chat client for curl-described AI providers."""

__version__ = "0.1.0"
