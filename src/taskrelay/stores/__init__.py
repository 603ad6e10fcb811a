"""Shared helpers for SQL-backed stores."""

from taskrelay.stores._connection import execute_with_connection

__all__ = ["execute_with_connection"]
