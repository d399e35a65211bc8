"""
Kinsync API Routes Package.

Example:
    from api.routes import sync_router, sync_peer_router

    app.include_router(sync_router)
    app.include_router(sync_peer_router)
"""

# ============================================================================
# Sync Routers
# ============================================================================

from api.routes.sync import router as sync_router
from api.routes.sync_peer import router as sync_peer_router

# ============================================================================
# Timeline Routers
# ============================================================================

from api.routes.people import router as people_router


__all__ = [
    "sync_router",
    "sync_peer_router",
    "people_router",
]
