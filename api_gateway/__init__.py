#!/usr/bin/env python3
"""
Tiris Backend
API Gateway Initialization

This package holds the HTTP edge of the Tiris backend: session tokens and
OAuth, rate limiting, the audit trail, the services behind each route and
the FastAPI application factory.
"""

# Setup package metadata
__version__ = '1.0.0'
__author__ = 'Tiris Team'
__description__ = 'API Gateway for the Tiris trading backend'

__all__ = ['__version__', '__author__', '__description__']
