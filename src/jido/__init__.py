"""jido: iterative coding-agent orchestration with safety gating."""

__version__ = "0.3.0"
