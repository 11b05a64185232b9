import math
import time
from dataclasses import dataclass
from pathlib import Path

import redis.exceptions
from redis.asyncio import Redis

from .config import RateLimit

LUA_SCRIPT = Path(__file__).parent / 'redis/token/bucket.lua'
LUA = LUA_SCRIPT.read_text()


@dataclass(frozen=True)
class Decision:
    allowed: bool
    remaining: float
    retry_after: int = 0    # whole seconds until enough tokens are back


def bucket_key(prefix: str, client_id: str) -> str:
    """One bucket per route prefix and client, like an Nginx zone per location."""
    return f'rl:{prefix}:{client_id}'


class RateLimiter:
    """
    Redis-backed token buckets.

    The Lua script does refill, check and take in one atomic step, so several
    frontdoor processes can share the same buckets.
    """
    def __init__(self, client: Redis):
        self.client = client
        self.sha: str | None = None

    async def load(self) -> None:
        self.sha = await self.client.script_load(LUA)

    async def take(self, key: str, limit: RateLimit, tokens: int = 1) -> Decision:
        if self.sha is None:
            raise RuntimeError('RateLimiter used before load()')

        args = (limit.capacity, limit.rate, int(time.time() * 1000), tokens)
        try:
            allowed, remaining = await self.client.evalsha(self.sha, 1, key, *args)
        except redis.exceptions.NoScriptError:
            # script cache was flushed (e.g. Redis restart)
            await self.load()
            allowed, remaining = await self.client.evalsha(self.sha, 1, key, *args)

        remaining = float(remaining)
        if int(allowed):
            return Decision(True, remaining)
        return Decision(False, remaining, max(1, math.ceil((tokens - remaining) / limit.rate)))
