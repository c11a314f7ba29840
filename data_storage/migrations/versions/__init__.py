#!/usr/bin/env python3
"""
Tiris Backend
Database Migration Versions

Alembic revision scripts for the ledger, credential and audit schema.
"""
