"""Database module - Engine setup, ORM models and repository."""

from order_lifecycle.db.base import Base, get_engine, get_session_factory, init_db
from order_lifecycle.db.repository import OrderRepository

__all__ = ["Base", "get_engine", "get_session_factory", "init_db", "OrderRepository"]
