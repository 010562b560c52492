"""Profile search endpoint.

Provides:
  POST /search — authenticated username search, rate limited per subject
                 (``user_search``, 30/minute by default)

Order of checks: authenticate → validate query → rate limit → query. A denied
rate-limit check returns 429 without touching the profile directory.
"""

import re
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from sessionrelay.api.dependencies import get_config, get_rate_limiter, get_store
from sessionrelay.auth.middleware import authenticate_request
from sessionrelay.config import Config
from sessionrelay.constants import SEARCH_QUERY_MAX_LEN, SEARCH_QUERY_MIN_LEN
from sessionrelay.models.errors import InvalidInputError
from sessionrelay.ratelimit.limiter import RateLimiter
from sessionrelay.store.protocol import RelayStore
from sessionrelay.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["search"])

SEARCH_ACTION = "user_search"

_QUERY_CHARSET_RE = re.compile(r"[A-Za-z0-9_-]+")


class SearchRequest(BaseModel):
    query: Any = None


def validate_search_query(query: Any) -> str:
    """Return the trimmed query, or raise InvalidInputError.

    Accepted: 2-30 characters from ``[A-Za-z0-9_-]`` after trimming.
    """
    if not isinstance(query, str):
        raise InvalidInputError("Invalid query")
    trimmed = query.strip()
    if not SEARCH_QUERY_MIN_LEN <= len(trimmed) <= SEARCH_QUERY_MAX_LEN:
        raise InvalidInputError("Invalid query")
    if not _QUERY_CHARSET_RE.fullmatch(trimmed):
        raise InvalidInputError("Invalid query")
    return trimmed


@router.post("/search")
async def search_profiles(
    body: SearchRequest,
    subject_id: str = Depends(authenticate_request),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    store: RelayStore = Depends(get_store),
    config: Config = Depends(get_config),
) -> dict:
    """Case-insensitive username substring search, caller excluded.

    Returns:
        JSON: {"results": [{"user_id", "username", "avatar_url"}, ...]}
    """
    query = validate_search_query(body.query)
    await rate_limiter.enforce(subject_id, SEARCH_ACTION)

    profiles = await store.search_profiles(
        fragment=query,
        exclude_user_id=subject_id,
        limit=config.search.max_results,
    )
    logger.info("profile_search", subject_id=subject_id, result_count=len(profiles))
    return {"results": [p.to_dict() for p in profiles]}
