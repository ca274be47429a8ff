"""
API routers: jobs, connectors, health.
"""
