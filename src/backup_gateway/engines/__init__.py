"""Backup engine registry."""

from __future__ import annotations

from backup_gateway.core.models import AppConfig
from backup_gateway.engines.base import BaseEngine


def get_engine(config: AppConfig) -> BaseEngine:
    """Instantiate the backup engine for the given configuration."""
    from backup_gateway.engines.sqlite import SQLiteEngine

    return SQLiteEngine(config)


__all__ = ["BaseEngine", "get_engine"]
