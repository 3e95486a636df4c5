"""HTTP surface for threads, turns, and the turn event stream."""

from .app import build_orchestrator, create_app

__all__ = ["build_orchestrator", "create_app"]
