"""Pipeline persistence and work queue.

Two backends share one protocol: InMemoryStore for single-process runs and
tests, RedisStore for durable state and a shared queue across workers.

Redis key schema:
    {prefix}:pipeline:{id}   -> STRING (pipeline JSON, without jobs)
    {prefix}:job:{id}        -> HASH {status, data (job JSON)}
    {prefix}:queue:jobs      -> LIST (job ids awaiting a worker)
    {prefix}:dlq             -> LIST (dead-letter entries JSON)
    {prefix}:lock:pipeline:{id} -> STRING (lock token, expires)

The job status lives in its own hash field so compare-and-swap can run as a
single Lua script.

Pipeline mutations run under the store's per-pipeline lock: an asyncio.Lock
shared by every runner using the same InMemoryStore, or a Redis SET NX lock
({prefix}:lock:pipeline:{id}) shared across processes for RedisStore.
"""

import asyncio
import copy
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol, TYPE_CHECKING

from flowrunner.core.logging import get_logger, log_store_operation
from .models import Job, JobStatus, Pipeline

if TYPE_CHECKING:
    from flowrunner.core.cache import CacheService

logger = get_logger(__name__)


class PipelineStore(Protocol):
    """Persistence/queue substrate used by the async runner and workers."""

    async def save_pipeline(self, pipeline: Pipeline) -> None: ...

    async def load_pipeline(self, pipeline_id: str) -> Optional[Pipeline]: ...

    async def save_job(self, job: Job) -> None: ...

    async def load_job(self, job_id: str) -> Optional[Job]: ...

    async def compare_and_set_job_status(self, job_id: str, expected: JobStatus,
                                         new: JobStatus) -> bool: ...

    async def enqueue(self, job_id: str) -> None: ...

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[str]: ...

    async def add_dlq_entry(self, entry: Dict[str, Any]) -> None: ...

    async def list_dlq_entries(self, limit: int = 100) -> List[Dict[str, Any]]: ...

    def lock(self, pipeline_id: str,
             timeout: float = 60.0) -> AsyncContextManager[Optional[str]]: ...


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryStore:
    """Process-local store. Records are copied in and out like a real backend."""

    def __init__(self):
        self._pipelines: Dict[str, Dict[str, Any]] = {}
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._dlq: List[Dict[str, Any]] = []
        self._queue: Optional[asyncio.Queue] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @property
    def queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    async def save_pipeline(self, pipeline: Pipeline) -> None:
        self._pipelines[pipeline.id] = copy.deepcopy(pipeline.to_dict(include_jobs=False))
        for job in pipeline.jobs:
            await self.save_job(job)
        log_store_operation(logger, "save_pipeline", pipeline.id, status=pipeline.status.value)

    async def load_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        record = self._pipelines.get(pipeline_id)
        log_store_operation(logger, "load_pipeline", pipeline_id, found=record is not None)
        if record is None:
            return None
        jobs = [await self.load_job(job_id) for job_id in record.get("job_ids", [])]
        return Pipeline.from_dict(copy.deepcopy(record), jobs=[j for j in jobs if j])

    async def save_job(self, job: Job) -> None:
        self._jobs[job.id] = copy.deepcopy(job.to_dict())

    async def load_job(self, job_id: str) -> Optional[Job]:
        record = self._jobs.get(job_id)
        return Job.from_dict(copy.deepcopy(record)) if record else None

    async def compare_and_set_job_status(self, job_id: str, expected: JobStatus,
                                         new: JobStatus) -> bool:
        record = self._jobs.get(job_id)
        if record is None or record["status"] != expected.value:
            return False
        record["status"] = new.value
        return True

    async def enqueue(self, job_id: str) -> None:
        await self.queue.put(job_id)

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[str]:
        if timeout is None:
            try:
                return self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return None
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def queue_size(self) -> int:
        return self.queue.qsize()

    async def add_dlq_entry(self, entry: Dict[str, Any]) -> None:
        self._dlq.insert(0, copy.deepcopy(entry))

    async def list_dlq_entries(self, limit: int = 100) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._dlq[:limit])

    @asynccontextmanager
    async def lock(self, pipeline_id: str, timeout: float = 60.0):
        """Per-pipeline lock; the entry is dropped once no task holds or awaits it."""
        lock = self._locks.setdefault(pipeline_id, asyncio.Lock())
        self._lock_users[pipeline_id] = self._lock_users.get(pipeline_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                raise TimeoutError(f"Could not acquire lock: pipeline:{pipeline_id}") from None
            try:
                yield None
            finally:
                lock.release()
        finally:
            self._lock_users[pipeline_id] -= 1
            if not self._lock_users[pipeline_id]:
                del self._lock_users[pipeline_id]
                del self._locks[pipeline_id]

    def lock_count(self) -> int:
        return len(self._locks)


# =============================================================================
# REDIS
# =============================================================================

CAS_STATUS_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'status')
if current == ARGV[1] then
    redis.call('HSET', KEYS[1], 'status', ARGV[2])
    return 1
end
return 0
"""


class RedisStore:
    """Redis-backed store (redis.asyncio client with decode_responses=True)."""

    def __init__(self, client, prefix: str = "flowrunner", state_ttl: int = 86400,
                 dlq_maxlen: int = 1000, lock_poll_interval: float = 0.05):
        self.redis = client
        self.prefix = prefix
        self.state_ttl = state_ttl
        self.dlq_maxlen = dlq_maxlen
        self.lock_poll_interval = lock_poll_interval

    def _key(self, *parts: str) -> str:
        return ":".join([self.prefix, *parts])

    async def save_pipeline(self, pipeline: Pipeline) -> None:
        key = self._key("pipeline", pipeline.id)
        await self.redis.set(key, json.dumps(pipeline.to_dict(include_jobs=False)))
        for job in pipeline.jobs:
            await self.save_job(job)
        if pipeline.is_terminal:
            await self.redis.expire(key, self.state_ttl)
            for job in pipeline.jobs:
                await self.redis.expire(self._key("job", job.id), self.state_ttl)
        log_store_operation(logger, "save_pipeline", key, status=pipeline.status.value)

    async def load_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        key = self._key("pipeline", pipeline_id)
        raw = await self.redis.get(key)
        log_store_operation(logger, "load_pipeline", key, found=raw is not None)
        if raw is None:
            return None
        record = json.loads(raw)
        jobs = [await self.load_job(job_id) for job_id in record.get("job_ids", [])]
        return Pipeline.from_dict(record, jobs=[j for j in jobs if j])

    async def save_job(self, job: Job) -> None:
        await self.redis.hset(self._key("job", job.id), mapping={
            "status": job.status.value,
            "data": json.dumps(job.to_dict()),
        })

    async def load_job(self, job_id: str) -> Optional[Job]:
        raw = await self.redis.hgetall(self._key("job", job_id))
        if not raw or "data" not in raw:
            return None
        data = json.loads(raw["data"])
        data["status"] = raw.get("status", data.get("status"))
        return Job.from_dict(data)

    async def compare_and_set_job_status(self, job_id: str, expected: JobStatus,
                                         new: JobStatus) -> bool:
        swapped = await self.redis.eval(CAS_STATUS_SCRIPT, 1, self._key("job", job_id),
                                        expected.value, new.value)
        return bool(int(swapped))

    async def enqueue(self, job_id: str) -> None:
        await self.redis.rpush(self._key("queue", "jobs"), job_id)

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[str]:
        key = self._key("queue", "jobs")
        if timeout is None:
            return await self.redis.lpop(key)
        item = await self.redis.blpop([key], timeout=timeout)
        return item[1] if item else None

    async def add_dlq_entry(self, entry: Dict[str, Any]) -> None:
        key = self._key("dlq")
        await self.redis.lpush(key, json.dumps(entry))
        await self.redis.ltrim(key, 0, self.dlq_maxlen - 1)

    async def list_dlq_entries(self, limit: int = 100) -> List[Dict[str, Any]]:
        raw = await self.redis.lrange(self._key("dlq"), 0, limit - 1)
        return [json.loads(item) for item in raw]

    @asynccontextmanager
    async def lock(self, pipeline_id: str, timeout: float = 60.0):
        """Distributed per-pipeline lock (SET NX with a token and expiry).

        Args:
            pipeline_id: Pipeline to lock
            timeout: Seconds to wait for the lock, also its expiry

        Yields:
            Lock token

        Raises:
            TimeoutError: If the lock cannot be acquired in time
        """
        lock_key = self._key("lock", "pipeline", pipeline_id)
        lock_token = str(uuid.uuid4())
        deadline = time.monotonic() + timeout

        while not await self.redis.set(lock_key, lock_token,
                                        ex=max(1, int(timeout)), nx=True):
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Could not acquire lock: {lock_key}")
            await asyncio.sleep(self.lock_poll_interval)

        logger.debug("Lock acquired", lock_key=lock_key, token=lock_token[:8])
        try:
            yield lock_token
        finally:
            # Only release if we still hold it (the lock may have expired)
            current = await self.redis.get(lock_key)
            if current == lock_token:
                await self.redis.delete(lock_key)
                logger.debug("Lock released", lock_key=lock_key)


def create_store(cache: "CacheService") -> PipelineStore:
    """Factory function: RedisStore when Redis is connected, else InMemoryStore."""
    if cache.is_redis_available():
        logger.info("Using Redis pipeline store", prefix=cache.settings.redis_key_prefix)
        return RedisStore(cache.redis, prefix=cache.settings.redis_key_prefix,
                          state_ttl=cache.settings.redis_state_ttl)
    logger.info("Using in-memory pipeline store")
    return InMemoryStore()
