"""ProductGuard Enforcement Engine - API Routers"""
from .scans import router as scans_router
from .infringements import router as infringements_router
from .dmca import router as dmca_router
from .scheduler import router as scheduler_router
from .admin import router as admin_router

__all__ = [
    "scans_router",
    "infringements_router",
    "dmca_router",
    "scheduler_router",
    "admin_router",
]
