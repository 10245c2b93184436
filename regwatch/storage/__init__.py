"""Alert persistence."""

from regwatch.storage.base import AlertStore
from regwatch.storage.memory import InMemoryAlertStore
from regwatch.storage.sql import SQLAlchemyAlertStore

__all__ = ["AlertStore", "InMemoryAlertStore", "SQLAlchemyAlertStore"]
