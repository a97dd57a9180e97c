"""Locations (rooms) read endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from roomcal.api.auth import CurrentUser, get_current_user

router = APIRouter(prefix="/locations", tags=["locations"])


@router.get("")
def list_locations(
    include_unreservable: bool = Query(False),
    user: CurrentUser = Depends(get_current_user),
) -> list[dict]:
    from roomcal.infra.db import txn
    from roomcal.infra.repositories.locations_repository import list_locations as repo_list

    with txn() as cur:
        return repo_list(cur, reservable_only=not include_unreservable)
