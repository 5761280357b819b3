"""Persistence layer: configuration and the SQLAlchemy Core store."""

from entityforge.persistence.config import DatabaseConfig, metadata_path_from_env
from entityforge.persistence.store import Store, coerce_key

__all__ = [
    "DatabaseConfig",
    "Store",
    "coerce_key",
    "metadata_path_from_env",
]
