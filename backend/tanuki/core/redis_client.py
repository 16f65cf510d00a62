"""
Async Redis access for the graph cache.

Clients are kept per event loop: the CLI runs each trace under its own
``asyncio.run`` and tests create a fresh loop per case, and a client bound to
a closed loop fails with "Future attached to a different loop".
"""
from redis import asyncio as aioredis
from redis.asyncio.connection import ConnectionPool as AsyncConnectionPool
from ..core.config import settings
import asyncio
import logging
import threading
from typing import Dict

logger = logging.getLogger(__name__)

_redis_async_by_loop: Dict[str, aioredis.Redis] = {}

def _current_loop_key() -> str:
	try:
		loop = asyncio.get_running_loop()
		return f"loop-{id(loop)}"
	except RuntimeError:
		# Called outside a loop, e.g. while building services synchronously
		return f"thread-{threading.get_ident()}"

def get_redis() -> aioredis.Redis:
	"""Async Redis client for the current event loop (created on first use)."""
	key = _current_loop_key()
	client = _redis_async_by_loop.get(key)
	if client is not None:
		return client

	pool = AsyncConnectionPool.from_url(
		settings.redis_url,
		decode_responses=True,
		max_connections=10,
		socket_connect_timeout=5,
		socket_timeout=5,
		retry_on_timeout=True,
	)
	client = aioredis.Redis(connection_pool=pool)
	_redis_async_by_loop[key] = client
	logger.debug(f"Created Redis client for {key}")
	return client

async def close_redis() -> None:
	"""Close every client created so far; safe to call when none exist."""
	while _redis_async_by_loop:
		key, client = _redis_async_by_loop.popitem()
		try:
			await client.aclose()
		except Exception as e:
			logger.warning(f"Error closing Redis client {key}: {e}")
