"""
OEE Monitor - Persistence Package

This package provides the document stores and the hybrid gateway in front of them.
"""

from .base import Collections, DocumentQuery, DocumentStore
from .gateway import CircuitBreaker, CircuitState, HybridPersistenceGateway
from .local_store import LocalDocumentStore
from .sql_store import SqlDocumentStore

__all__ = [
    "Collections",
    "DocumentQuery",
    "DocumentStore",
    "CircuitBreaker",
    "CircuitState",
    "HybridPersistenceGateway",
    "LocalDocumentStore",
    "SqlDocumentStore",
]
