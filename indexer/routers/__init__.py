"""
Tezos Delegation Indexer - API Routers
"""

from .delegations import router as delegations_router
from .health import router as health_router

__all__ = ["delegations_router", "health_router"]
