"""
Tagged response cache for read endpoints.

GET responses are stored in Redis under a request fingerprint, with an ETag
and the set of tags describing what the response depends on. Mutations call
invalidate_by_tag() to drop every entry under a tag.

Cache and store are eventually consistent: TTL bounds staleness and tag
invalidation shortens it. Any Redis failure bypasses the cache; a request is
never failed by its cache.
"""
import functools
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from fastapi import Request, Response
from fastapi.encoders import jsonable_encoder

from leadrelay.services.tag_index import TagIndex, normalize_tags
from leadrelay.utils.redis import make_key

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
ANONYMOUS_USER = "anonymous"
PATTERN_CHARS = ("*", "?", "[")


@dataclass(frozen=True)
class CachedResponse:
    body: str
    etag: str
    tags: list[str] = field(default_factory=list)
    status_code: int = 200

    def to_json(self) -> str:
        return json.dumps({
            "body": self.body,
            "etag": self.etag,
            "tags": self.tags,
            "status_code": self.status_code,
        })

    @classmethod
    def from_json(cls, raw: str) -> "CachedResponse":
        data = json.loads(raw)
        return cls(
            body=data["body"],
            etag=data["etag"],
            tags=list(data.get("tags") or []),
            status_code=int(data.get("status_code", 200)),
        )


def compute_etag(body: str) -> str:
    return '"' + hashlib.sha256(body.encode()).hexdigest()[:32] + '"'


def etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    """RFC 7232 weak comparison against an If-None-Match header."""
    if not if_none_match:
        return False
    if if_none_match.strip() == "*":
        return True
    bare = etag.strip('"')
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate.strip('"') == bare:
            return True
    return False


def fingerprint(path: str, query: Optional[dict] = None, user_id: Optional[str] = None) -> str:
    """
    Cache key for a request: path, sorted query parameters and acting user.

    Query order never changes the key; the user is part of the hash so one
    user's response is never served to another.
    """
    items = sorted((str(k), str(v)) for k, v in (query or {}).items())
    raw = json.dumps([path, items, user_id or ANONYMOUS_USER], separators=(",", ":"))
    digest = hashlib.sha256(raw.encode()).hexdigest()
    return make_key("cache", path.strip("/") or "root", digest)


def acting_user(request: Request) -> str:
    """User identity for cache scoping: set by auth on request.state, else X-User-Id."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return str(user_id)
    return request.headers.get("X-User-Id") or ANONYMOUS_USER


def render(result: Any) -> str:
    return json.dumps(jsonable_encoder(result), separators=(",", ":"))


class ResponseCache:
    """Redis-backed response cache with tag-based invalidation."""

    def __init__(
        self,
        redis,
        tag_index: Optional[TagIndex] = None,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.redis = redis
        self._clock = clock or time.time
        self.tag_index = tag_index or TagIndex(redis, clock=self._clock)
        self.default_ttl_seconds = default_ttl_seconds

    async def get(self, key: str) -> Optional[CachedResponse]:
        try:
            raw = await self.redis.get(key)
        except Exception as e:
            logger.warning("Response cache read failed, bypassing: %s", str(e))
            return None
        if not raw:
            return None
        try:
            return CachedResponse.from_json(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding malformed cache entry %s: %s", key, str(e))
            return None

    async def set(
        self,
        key: str,
        body: str,
        ttl_seconds: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Optional[CachedResponse]:
        """Store a rendered body with its tags. Returns the entry, or None if Redis failed."""
        ttl = int(ttl_seconds or self.default_ttl_seconds)
        tag_list = normalize_tags(tags)
        entry = CachedResponse(body=body, etag=compute_etag(body), tags=tag_list)

        try:
            # Entry and tag membership land in the same MULTI
            pipe = self.redis.pipeline(transaction=True)
            pipe.set(key, entry.to_json(), ex=ttl)
            self.tag_index.stage_add(pipe, key, tag_list, self._clock() + ttl)
            await pipe.execute()
        except Exception as e:
            logger.warning("Response cache write failed for %s: %s", key, str(e))
            return None
        return entry

    async def warm(
        self,
        key: str,
        result: Any,
        ttl_seconds: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> bool:
        """Preload `result` under `key` exactly as a cache miss on that request would store it."""
        entry = await self.set(key, render(result), ttl_seconds, tags)
        return entry is not None

    async def invalidate_by_tag(self, tags) -> int:
        """Remove every entry under the given tag(s). Returns entries removed."""
        try:
            return await self.tag_index.invalidate(tags)
        except Exception as e:
            logger.warning(
                "Cache invalidation failed for %s: %s", tags, str(e),
                extra={"tag": ",".join(normalize_tags(tags))},
            )
            return 0

    async def invalidate_key(self, key: str) -> int:
        """Remove one exact key. Wildcard patterns are not supported and remove nothing."""
        if any(ch in key for ch in PATTERN_CHARS):
            logger.warning("Pattern cache invalidation is not supported: %s", key)
            return 0
        try:
            raw = await self.redis.get(key)
            removed = await self.redis.delete(key)
            if raw:
                tags = CachedResponse.from_json(raw).tags
                if tags:
                    await self.tag_index.untag(key, tags)
            return int(removed or 0)
        except Exception as e:
            logger.warning("Cache invalidation failed for %s: %s", key, str(e))
            return 0

    def with_cache(self, ttl_seconds: Optional[int] = None, tags: Optional[Iterable[str]] = None, local_cache=None):
        """Decorator for a GET handler, bound to this cache instance."""
        return _cache_decorator(lambda request: self, ttl_seconds, tags, local_cache)


def get_response_cache(request: Request) -> Optional[ResponseCache]:
    container = getattr(request.app.state, "container", None)
    return getattr(container, "response_cache", None)


def with_cache(ttl_seconds: Optional[int] = None, tags: Optional[Iterable[str]] = None, local_cache=None):
    """
    Decorator for a FastAPI GET handler that takes a `request: Request` parameter.

    The cache instance is resolved per request from the app's service
    container. `local_cache`, if given, is a callable returning a per-user
    in-process cache consulted first for requests without query parameters.
    """
    return _cache_decorator(get_response_cache, ttl_seconds, tags, local_cache)


def _find_request(args, kwargs) -> Request:
    request = kwargs.get("request")
    if isinstance(request, Request):
        return request
    for arg in args:
        if isinstance(arg, Request):
            return arg
    raise RuntimeError("cached endpoints must accept a `request: Request` parameter")


def _respond(entry: CachedResponse, request: Request, status: str) -> Response:
    headers = {"ETag": entry.etag, "X-Cache": status}
    if etag_matches(request.headers.get("If-None-Match"), entry.etag):
        return Response(status_code=304, headers=headers)
    return Response(
        content=entry.body,
        status_code=entry.status_code,
        media_type="application/json",
        headers=headers,
    )


def _cache_decorator(resolve_cache, ttl_seconds, tags, local_cache):
    tag_list = normalize_tags(tags)

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            request = _find_request(args, kwargs)
            cache = resolve_cache(request)
            if cache is None or request.method != "GET":
                return await func(*args, **kwargs)

            user_id = acting_user(request)
            unfiltered = not request.query_params
            local = local_cache(request) if (local_cache is not None and unfiltered) else None

            if local is not None:
                entry = local.get(user_id)
                if entry is not None:
                    return _respond(entry, request, "HIT")

            key = fingerprint(request.url.path, dict(request.query_params), user_id)
            entry = await cache.get(key)
            if entry is not None:
                if local is not None:
                    local.set(user_id, entry)
                return _respond(entry, request, "HIT")

            result = await func(*args, **kwargs)
            if isinstance(result, Response):
                return result

            body = render(result)
            entry = await cache.set(key, body, ttl_seconds, tag_list)
            if entry is None:
                entry = CachedResponse(body=body, etag=compute_etag(body), tags=tag_list)
            elif local is not None:
                local.set(user_id, entry)
            return _respond(entry, request, "MISS")

        return wrapper

    return decorator
