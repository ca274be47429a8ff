"""
HTTP API: application factory, middleware and routers.
"""
