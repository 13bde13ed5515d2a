"""Registration Sync - API Routers"""
from .admin import router as admin_router
from .forms import router as forms_router
from .sync import router as sync_router

__all__ = [
    "admin_router",
    "forms_router",
    "sync_router",
]
