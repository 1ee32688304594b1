"""Gemini key-fallback relay."""

__version__ = "0.1.0"
