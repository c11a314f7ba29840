#!/usr/bin/env python3
"""
Tiris Backend
API Routes

Routers of the API Gateway. Services are read from ``request.app.state`` so
that routers can be declared at import time.
"""

from typing import Any, Dict


def ok(data: Any = None, **extra) -> Dict[str, Any]:
    """Success envelope shared by every route."""
    body = {"success": True, "data": data}
    body.update(extra)
    return body


def get_routers():
    """Routers mounted under the API prefix."""
    from api_gateway.routes import auth, trading_logs, security
    return [auth.router, trading_logs.router, security.router]
