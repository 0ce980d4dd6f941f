"""Batch-scoped locks serializing transitions on overlapping crop sets.

An in-process ``asyncio.Lock`` per key always applies; when a Redis client
is configured a Redis lock with a TTL is layered on top so separate worker
processes serialize too.  Every wait is bounded by a timeout.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager

import structlog
from redis.asyncio import Redis
from redis.exceptions import LockError

from trayflow.config import get_settings
from trayflow.errors import TransitionBusyError

logger = structlog.get_logger("trayflow.locks")

# Entries live only while some caller holds or waits on the key.
_local_locks: dict[str, asyncio.Lock] = {}
_local_users: dict[str, int] = {}


def lock_key(batch_id: uuid.UUID | None, crop_id: uuid.UUID) -> str:
	"""Batch key for grouped crops, crop key for legacy ungrouped ones."""
	if batch_id is not None:
		return f"batch:{batch_id}"
	return f"crop:{crop_id}"


def _release_local(key: str) -> None:
	remaining = _local_users[key] - 1
	if remaining:
		_local_users[key] = remaining
	else:
		del _local_users[key]
		del _local_locks[key]


class BatchLockManager:
	def __init__(
		self,
		redis_client: Redis | None = None,
		*,
		timeout: float | None = None,
		ttl: float | None = None,
	):
		settings = get_settings()
		self.redis_client = redis_client
		self.timeout = timeout if timeout is not None else settings.transition_lock_timeout_seconds
		self.ttl = ttl if ttl is not None else settings.transition_lock_ttl_seconds

	@asynccontextmanager
	async def hold(self, keys: Iterable[str]) -> AsyncIterator[list[str]]:
		"""Acquire all keys in sorted order so overlapping callers cannot deadlock."""
		ordered = sorted(set(keys))
		async with AsyncExitStack() as stack:
			for key in ordered:
				await stack.enter_async_context(self._hold_one(key))
			yield ordered

	@asynccontextmanager
	async def _hold_one(self, key: str) -> AsyncIterator[None]:
		local = _local_locks.setdefault(key, asyncio.Lock())
		_local_users[key] = _local_users.get(key, 0) + 1
		try:
			try:
				await asyncio.wait_for(local.acquire(), timeout=self.timeout)
			except TimeoutError:
				raise TransitionBusyError(key, self.timeout) from None

			try:
				if self.redis_client is None:
					yield
				else:
					async with self._hold_redis(key):
						yield
			finally:
				local.release()
		finally:
			_release_local(key)

	@asynccontextmanager
	async def _hold_redis(self, key: str) -> AsyncIterator[None]:
		assert self.redis_client is not None
		redis_lock = self.redis_client.lock(
			f"trayflow:lock:{key}",
			timeout=self.ttl,
			blocking_timeout=self.timeout,
		)
		if not await redis_lock.acquire():
			raise TransitionBusyError(key, self.timeout)
		try:
			yield
		finally:
			try:
				await redis_lock.release()
			except LockError as exc:
				logger.warning("redis_lock_release_failed", key=key, error=str(exc))
