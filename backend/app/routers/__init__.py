"""Gig Marketplace Orders - API Routers"""
from .orders import router as orders_router
from .refunds import router as refunds_router
from .bank_accounts import router as bank_accounts_router
from .admin import router as admin_router
from .scheduler import router as scheduler_router

__all__ = [
    "orders_router",
    "refunds_router",
    "bank_accounts_router",
    "admin_router",
    "scheduler_router",
]
