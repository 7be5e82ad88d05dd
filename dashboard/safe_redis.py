"""
Fail-open redis wrapper, the cache must never take an endpoint down.
"""

import socket
import asyncio
import inspect
import traceback
import orjson as json
from typing import Any, Optional
from loguru import logger
from redis.exceptions import RedisError
import redis.asyncio as redis


FAIL_OPEN_EXCEPTIONS = (
    RedisError,
    socket.timeout,
    socket.gaierror,
    OSError,
    asyncio.TimeoutError,
    RuntimeError,
)


def _error_detail(exc: BaseException) -> str:
    detail = str(exc)
    if not detail.strip():
        detail = traceback.format_exc()
    return detail


def pool_stats(pool) -> str:
    """Return a lightweight snapshot of pool usage for diagnostics."""
    try:
        in_use = len(getattr(pool, "_in_use_connections", []))
        available = len(getattr(pool, "_available_connections", []))
        max_conns = getattr(pool, "max_connections", None)
        return f"in_use={in_use} available={available} max={max_conns}"
    except Exception:
        return "pool_stats_unavailable"


class SafeRedis:
    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 6379,
        password: Optional[str] = None,
        db: int = 0,
        *,
        default: Any = None,
        socket_connect_timeout: float = 0.2,
        socket_timeout: float = 0.5,
        op_timeout: float = 0.5,
        max_connections: int = 8,
        socket_keepalive: bool = True,
        health_check_interval: int = 30,
        retry_on_timeout: bool = False,
        retry: Any = None,
        **kwargs,
    ):
        self.default = default
        self.timeout = op_timeout
        self.client = redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            socket_connect_timeout=socket_connect_timeout,
            socket_timeout=socket_timeout,
            max_connections=max_connections,
            socket_keepalive=socket_keepalive,
            health_check_interval=health_check_interval,
            retry_on_timeout=retry_on_timeout,
            retry=retry,
            **kwargs,
        )

    async def get_json(self, key: str) -> Any:
        """
        Load a cached JSON document, None on miss or any redis/decoding failure.
        """
        raw = await self.get(key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning(f"SafeRedis: discarding undecodable cache entry {key=}: {exc}")
            return None

    async def set_json(self, key: str, value: Any, ttl: int) -> None:
        await self.set(key, json.dumps(value), ex=ttl)

    def __getattr__(self, name):
        attr = getattr(self.client, name)
        if not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            try:
                result = attr(*args, **kwargs)
            except FAIL_OPEN_EXCEPTIONS as exc:
                logger.error(f"SafeRedis: fail-open on {name} (call): {_error_detail(exc)}")
                return self.default
            if not inspect.isawaitable(result):
                return result

            async def safe_coro():
                loop = asyncio.get_running_loop()
                start = loop.time()
                try:
                    value = await asyncio.wait_for(result, self.timeout)
                    elapsed = loop.time() - start
                    if elapsed > 0.25:
                        logger.debug(
                            f"SafeRedis: slow call {name} elapsed={elapsed * 1000:.1f}ms "
                            f"pool=({pool_stats(self.client.connection_pool)})"
                        )
                    return value
                except FAIL_OPEN_EXCEPTIONS as exc:
                    elapsed = loop.time() - start
                    logger.error(
                        f"SafeRedis: fail-open on {name} (await): {_error_detail(exc)} "
                        f"elapsed={elapsed * 1000:.1f}ms pool=({pool_stats(self.client.connection_pool)})"
                    )
                    return self.default

            return safe_coro()

        return wrapper
