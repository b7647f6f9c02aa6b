"""Per-turn chat orchestration and response relaying."""

from .orchestrator import ChatOrchestrator
from .relay import StreamRelay

__all__ = ["ChatOrchestrator", "StreamRelay"]
