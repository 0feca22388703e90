import redis.asyncio as aioredis
from app.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None

DRIVERS_GEO_KEY = "drivers:geo"


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ---------------------------------------------------------------------------
# GEO helpers
# ---------------------------------------------------------------------------

async def geo_add_driver(redis: aioredis.Redis, driver_id: str, lat: float, lng: float) -> None:
    """Add / update driver position in the geospatial index."""
    await redis.geoadd(DRIVERS_GEO_KEY, [lng, lat, driver_id])


async def geo_remove_driver(redis: aioredis.Redis, driver_id: str) -> None:
    await redis.zrem(DRIVERS_GEO_KEY, driver_id)


async def geo_nearby_drivers(
    redis: aioredis.Redis,
    lat: float,
    lng: float,
    radius_m: float,
    count: int = 50,
) -> list[tuple[str, float]]:
    """Return up to `count` (driver_id, distance_m) pairs nearest to the given coordinates."""
    results = await redis.geosearch(
        DRIVERS_GEO_KEY,
        longitude=lng,
        latitude=lat,
        radius=radius_m,
        unit="m",
        sort="ASC",
        count=count,
        withdist=True,
    )
    return [(member, float(dist)) for member, dist in results]
