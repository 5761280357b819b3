"""EntityForge: metadata-driven backend engine."""

__version__ = "0.1.0"
