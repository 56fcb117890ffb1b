"""Gateway pricing lookup with an in-process TTL cache.

Each instance keeps its own cache. Admin pricing changes invalidate the local
cache and publish the gateway id on a Redis channel so every other instance
drops its copy as well, instead of serving stale prices until the TTL runs out.
Reads fail open: if MongoDB is unreachable the configured defaults are used.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Callable

from pymongo.errors import PyMongoError

from app.core.config import get_settings
from app.core.exceptions import BackendUnavailableError, BadRequestError
from app.core.logging import get_logger
from app.models.gateway_config import GatewayConfig

log = get_logger(__name__)

APPROVED = "approved"
LIVE = "live"
INVALIDATE_ALL = "*"
ACTIVE = "is_active"
GATEWAY_INACTIVE = "GATEWAY_INACTIVE"


class PricingCache:
    """Gateway id -> {approved, live, is_active}, each entry expiring ttl_seconds after it was set."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[dict[str, Any], float]] = {}

    def get(self, key: str) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() > expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: dict[str, Any]) -> None:
        self._entries[key] = (value, self._clock() + self._ttl)

    def set_all(self, entries: dict[str, dict[str, Any]]) -> None:
        expires_at = self._clock() + self._ttl
        for key, value in entries.items():
            self._entries[key] = (value, expires_at)

    def invalidate(self, key: str | None = None) -> None:
        if key:
            self._entries.pop(key, None)
        else:
            self._entries.clear()

    def is_empty(self) -> bool:
        now = self._clock()
        for key in [k for k, (_, exp) in self._entries.items() if now > exp]:
            del self._entries[key]
        return not self._entries

    def __len__(self) -> int:
        return len(self._entries)


_cache: PricingCache | None = None


def get_cache() -> PricingCache:
    global _cache
    if _cache is None:
        _cache = PricingCache(get_settings().pricing_cache_ttl_seconds)
    return _cache


def default_pricing() -> dict[str, int]:
    s = get_settings()
    return {APPROVED: s.default_price_approved, LIVE: s.default_price_live}


def _resolve(config: GatewayConfig) -> dict[str, Any]:
    defaults = default_pricing()
    return {
        APPROVED: config.pricing_approved if config.pricing_approved is not None else defaults[APPROVED],
        LIVE: config.pricing_live if config.pricing_live is not None else defaults[LIVE],
        ACTIVE: config.is_active,
    }


def _pricing_of(entry: dict[str, Any]) -> dict[str, int]:
    return {APPROVED: entry[APPROVED], LIVE: entry[LIVE]}


async def _lookup(gateway_id: str) -> dict[str, Any]:
    """Cached gateway entry: {approved, live, is_active}. Unknown gateways resolve to active defaults."""
    cache = get_cache()
    hit = cache.get(gateway_id)
    if hit is not None:
        return dict(hit)
    try:
        if cache.is_empty():
            # Cold cache: one bulk read instead of one query per concurrent request
            configs = await GatewayConfig.find_all().to_list()
            cache.set_all({c.id: _resolve(c) for c in configs})
            log.info("pricing_cache_warmed", count=len(configs))
            hit = cache.get(gateway_id)
        else:
            config = await GatewayConfig.get(gateway_id)
            if config is not None:
                hit = _resolve(config)
                cache.set(gateway_id, hit)
    except PyMongoError as e:
        log.warning("pricing_lookup_failed", gateway_id=gateway_id, error=str(e))
        return {**default_pricing(), ACTIVE: True}
    if hit is None:
        hit = {**default_pricing(), ACTIVE: True}
        cache.set(gateway_id, hit)
    return dict(hit)


async def get_pricing(gateway_id: str) -> dict[str, int]:
    """Return {approved, live} credit costs for a gateway."""
    return _pricing_of(await _lookup(gateway_id))


async def require_active_gateway(gateway_id: str) -> dict[str, int]:
    """Pricing for a gateway that accepts new batches. Raises BadRequestError if it is switched off."""
    if not gateway_id:
        raise BadRequestError("Gateway ID is required")
    entry = await _lookup(gateway_id)
    if not entry.get(ACTIVE, True):
        raise BadRequestError(
            f"Gateway {gateway_id} is currently unavailable",
            details={"gateway_id": gateway_id, "reason": GATEWAY_INACTIVE},
        )
    return _pricing_of(entry)


def invalidate(gateway_id: str | None = None) -> None:
    """Drop one gateway's cached pricing, or everything."""
    get_cache().invalidate(gateway_id)
    log.info("pricing_cache_invalidated", gateway_id=gateway_id or INVALIDATE_ALL)


async def publish_invalidation(redis, gateway_id: str | None = None) -> None:
    """Tell other instances to drop cached pricing. Best effort; TTL still bounds staleness."""
    if redis is None:
        return
    channel = get_settings().pricing_invalidation_channel
    try:
        await redis.publish(channel, gateway_id or INVALIDATE_ALL)
    except Exception as e:
        log.warning("pricing_invalidation_publish_failed", gateway_id=gateway_id, error=str(e))


def handle_invalidation_message(message: dict[str, Any]) -> None:
    if not message or message.get("type") != "message":
        return
    data = message.get("data")
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    if not data:
        return
    invalidate(None if data == INVALIDATE_ALL else data)


async def _listen_once(redis, channel: str) -> None:
    pubsub = redis.pubsub()
    try:
        await pubsub.subscribe(channel)
        log.info("pricing_invalidation_listener_started", channel=channel)
        async for message in pubsub.listen():
            handle_invalidation_message(message)
    finally:
        try:
            await pubsub.aclose()
        except Exception as e:
            log.warning("pricing_invalidation_listener_close_failed", channel=channel, error=str(e))


async def listen_for_invalidations(redis) -> None:
    """Apply invalidation messages until cancelled, resubscribing after connection errors."""
    settings = get_settings()
    channel = settings.pricing_invalidation_channel
    while True:
        try:
            await _listen_once(redis, channel)
        except Exception as e:
            log.warning("pricing_invalidation_listener_error", channel=channel, error=str(e))
        # messages may have been missed while disconnected
        invalidate()
        await asyncio.sleep(settings.pricing_listener_retry_seconds)


async def set_gateway_pricing(
    gateway_id: str,
    approved: int | None,
    live: int | None,
    redis=None,
    *,
    is_active: bool | None = None,
) -> dict[str, Any]:
    """
    Upsert a gateway's pricing, then invalidate it locally and on every other instance.
    is_active=None leaves the switch as it is (new gateways start active).
    """
    gateway_id = (gateway_id or "").strip()
    if not gateway_id:
        raise BadRequestError("Gateway ID is required")
    for name, value in ((APPROVED, approved), (LIVE, live)):
        if value is not None and value < 0:
            raise BadRequestError(f"Price for {name} must be non-negative", details={name: value})
    try:
        config = await GatewayConfig.get(gateway_id)
        if config is None:
            config = GatewayConfig(
                id=gateway_id,
                pricing_approved=approved,
                pricing_live=live,
                is_active=True if is_active is None else is_active,
            )
            await config.insert()
        else:
            config.pricing_approved = approved
            config.pricing_live = live
            if is_active is not None:
                config.is_active = is_active
            config.updated_at = datetime.utcnow()
            await config.save()
    except PyMongoError as e:
        raise BackendUnavailableError("Failed to update gateway pricing") from e
    invalidate(gateway_id)
    await publish_invalidation(redis, gateway_id)
    log.info(
        "gateway_pricing_updated",
        gateway_id=gateway_id,
        approved=approved,
        live=live,
        is_active=config.is_active,
    )
    return {"gateway_id": gateway_id, **_resolve(config)}


async def list_gateway_pricing(active_only: bool = False) -> list[dict[str, Any]]:
    query = GatewayConfig.find(GatewayConfig.is_active == True) if active_only else GatewayConfig.find_all()  # noqa: E712
    configs = await query.sort("_id").to_list()
    return [
        {
            "gateway_id": c.id,
            "is_active": c.is_active,
            "pricing_approved": c.pricing_approved,
            "pricing_live": c.pricing_live,
            "pricing": _pricing_of(_resolve(c)),
            "updated_at": c.updated_at.isoformat(),
        }
        for c in configs
    ]
