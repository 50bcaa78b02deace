"""
Routes package for the consensus API.
"""

from consensus_api.routes.maintenance import router as maintenance_router
from consensus_api.routes.verifications import router as verifications_router

__all__ = ["maintenance_router", "verifications_router"]
