"""
ChildGuard - API Package

REST routes, WebSocket handlers and request/response schemas.
"""
