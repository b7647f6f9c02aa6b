"""Multimodal chat proxy for the Gemini API."""

__version__ = "0.1.0"
