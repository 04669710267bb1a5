"""Refund Adjudication Engine - API Routers"""
from .auth import router as auth_router
from .refunds import router as refunds_router
from .reviews import router as reviews_router
from .scheduler import router as scheduler_router

__all__ = [
    "auth_router",
    "refunds_router",
    "reviews_router",
    "scheduler_router",
]
