"""Attribution Engine - API Routers"""
from .attribution import router as attribution_router
from .fraud import router as fraud_router
from .payouts import router as payouts_router
from .scheduler import router as scheduler_router

__all__ = [
    "attribution_router",
    "fraud_router",
    "payouts_router",
    "scheduler_router",
]
