"""
Tiris Backend
Data Storage Module

This module provides the relational persistence layer: the database manager,
the ORM models and the repositories built on them.
"""

from data_storage.database import DatabaseManager

__all__ = ['DatabaseManager']
