"""Core components: services gateway, orchestration and errors."""
