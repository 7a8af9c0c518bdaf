"""agent-relay - share one local endpoint between AI coding CLI adapters."""

__version__ = "0.1.0"
