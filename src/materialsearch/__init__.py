"""MaterialSearch: turn orchestration and session engine for corpus research agents."""

__version__ = "0.4.0"
