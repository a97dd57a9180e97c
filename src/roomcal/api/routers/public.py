"""Public-facing routes (APP_ROLE=public)."""

from fastapi import APIRouter

from roomcal.api.routes import admin, locations, me, reservations

router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


router.include_router(me.router)
router.include_router(reservations.router)
router.include_router(locations.router)
router.include_router(admin.router)
