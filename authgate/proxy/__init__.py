"""
Proxy Package
=============

Forwards authenticated requests to the protected upstream application.

Main Components:
----------------
- routes.py: catch-all router mounted when UPSTREAM_URL is configured

Usage:
------
    from authgate.proxy.routes import proxy_router
    app.include_router(proxy_router)
"""

from .routes import proxy_router

__all__ = ["proxy_router"]
