"""
API routers package
"""

from app.routers.monitoring import router as monitoring_router
