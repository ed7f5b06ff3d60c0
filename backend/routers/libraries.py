"""
Libraries router: browse the media server's libraries and their items.

Used to pick the library ids that "all" and "recent" run scopes take, and to
size a scope before creating a run.
"""
import logging

from fastapi import APIRouter, HTTPException, Query

from errors import ConfigurationError, ResolutionError
from routers.test_runs import require_manager
from test_run_manager import RECENT_ITEMS_LIMIT

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/libraries", tags=["Libraries"])


def _catalog_error(e: Exception) -> HTTPException:
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=400, detail=str(e))
    logger.warning("[LIBRARIES] Catalog request failed: %s", e)
    return HTTPException(status_code=502, detail=str(e))


@router.get("")
async def list_libraries():
    catalog = require_manager().catalog
    try:
        return await catalog.get_libraries()
    except (ConfigurationError, ResolutionError) as e:
        raise _catalog_error(e)


@router.get("/{library_id}/items")
async def list_library_items(
    library_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    start_index: int = Query(default=0, ge=0),
    search_term: str = Query(default="", max_length=200),
):
    catalog = require_manager().catalog
    try:
        return await catalog.list_items(library_id, limit, start_index, search_term=search_term)
    except (ConfigurationError, ResolutionError) as e:
        raise _catalog_error(e)


@router.get("/{library_id}/items/recent")
async def list_recent_library_items(
    library_id: str,
    days: int = Query(default=7, ge=1, le=365),
    limit: int = Query(default=1000, ge=1, le=RECENT_ITEMS_LIMIT),
):
    catalog = require_manager().catalog
    try:
        return await catalog.list_recent_items(library_id, days, limit)
    except (ConfigurationError, ResolutionError) as e:
        raise _catalog_error(e)


@router.get("/{library_id}/count")
async def count_library_items(
    library_id: str,
    recent: bool = False,
    days: int = Query(default=7, ge=1, le=365),
):
    """Item count for a library, or for its items added in the last `days`."""
    catalog = require_manager().catalog
    try:
        if recent:
            result = await catalog.list_recent_items(library_id, days, RECENT_ITEMS_LIMIT)
        else:
            result = await catalog.list_items(library_id, 1, 0)
    except (ConfigurationError, ResolutionError) as e:
        raise _catalog_error(e)
    return {"count": result.get("total_count") or 0}
