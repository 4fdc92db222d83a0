"""Landing page translation orchestrator backend."""

__version__ = "0.1.0"
