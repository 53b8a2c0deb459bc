"""Local database configuration and the shared store handle."""

from .session import Base, create_store_engine
from .store import ExecuteResult, LocalStore

__all__ = ["Base", "create_store_engine", "ExecuteResult", "LocalStore"]
