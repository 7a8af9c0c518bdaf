"""Provider CLI adapters.

- **base**: ``ProviderSpec`` (argv builder + event mapper + install hint) and line parsing
- **adapter**: ``ProcessAdapter``, the one generic ``Handler`` for every CLI
- **catalog**: the built-in provider table
"""

from agentrelay.providers.adapter import ProcessAdapter
from agentrelay.providers.catalog import PROVIDERS, get_provider

__all__ = ["PROVIDERS", "ProcessAdapter", "get_provider"]
