"""Discord build-session orchestrator driving remote coding-agent sandboxes."""

__version__ = "0.1.0"

__all__ = ["__version__"]
