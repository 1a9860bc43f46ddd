"""arepo: criteria-driven repositories with tag-aware result caching."""

__version__ = "0.1.0"
