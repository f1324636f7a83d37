"""
api/routes/v1/cache.py -- Cache statistics and invalidation for administrators.

Routes:
  GET    /api/v1/cache/stats             -- hit/miss counters, size, memory estimate
  DELETE /api/v1/cache                   -- drop every entry and reset counters
  DELETE /api/v1/cache/users/{user_id}   -- drop one user's profile and report entries
"""

from fastapi import APIRouter, Depends, Request, Response

from api.models import CacheInvalidateResponse, CacheStatsResponse
from auth.dependencies import require_admin
from cache.store import TTLCache

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/cache/stats", response_model=CacheStatsResponse)
def get_cache_stats(request: Request) -> CacheStatsResponse:
    cache: TTLCache = request.app.state.cache
    return CacheStatsResponse.from_stats(cache.get_stats())


@router.delete("/cache", status_code=204)
def clear_cache(request: Request) -> Response:
    cache: TTLCache = request.app.state.cache
    cache.clear()
    return Response(status_code=204)


@router.delete("/cache/users/{user_id}", response_model=CacheInvalidateResponse)
def invalidate_user(request: Request, user_id: str) -> CacheInvalidateResponse:
    """Call after a profile or report assignment change so stale copies are not served."""
    cache: TTLCache = request.app.state.cache
    return CacheInvalidateResponse(user_id=user_id, removed=cache.invalidate_user(user_id))
