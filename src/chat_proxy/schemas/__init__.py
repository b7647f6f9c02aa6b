"""Pydantic and dataclass schemas for chat content and requests."""
