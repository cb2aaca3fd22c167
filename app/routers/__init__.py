"""
API Routers
Separate router modules for each domain.
"""

from app.routers import builds, catalog, health

__all__ = ["builds", "catalog", "health"]
