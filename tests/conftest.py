"""Shared fixtures: registry with test executors, runners, stores, fake Redis."""

import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

from flowrunner.core.config import Settings
from flowrunner.services.execution import (
    AsyncRunner,
    BranchEvaluator,
    DataFlowResolver,
    DLQHandler,
    InMemoryStore,
    JobWorker,
    MemoryEventSink,
    NodeRuntime,
    SynchronousRunner,
    WorkflowCompiler,
    create_registry,
)


# =============================================================================
# TEST EXECUTORS
# =============================================================================

class UpperExecutor:
    async def execute(self, inputs: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        return {"text": str(inputs.get("text", "")).upper()}


class FailingExecutor:
    async def execute(self, inputs: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        raise RuntimeError(config.get("message", "boom"))


class FlakyExecutor:
    """Fails the first `failures` calls per config key, then succeeds."""

    def __init__(self):
        self.attempts: Dict[str, int] = defaultdict(int)

    async def execute(self, inputs: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        key = config.get("key", "default")
        self.attempts[key] += 1
        if self.attempts[key] <= config.get("failures", 1):
            raise RuntimeError(f"flaky failure #{self.attempts[key]}")
        return {"attempts": self.attempts[key]}


class ConcurrencyGauge:
    """Records the highest number of simultaneously running executions."""

    def __init__(self):
        self.active = 0
        self.peak = 0

    async def execute(self, inputs: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(config.get("delay", 0.02))
        finally:
            self.active -= 1
        return {"done": True}


async def slow_executor(inputs: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
    await asyncio.sleep(config.get("delay", 0.05))
    return {"done": True}


def constant_executor(inputs: Dict[str, Any], config: Dict[str, Any]) -> Any:
    return config.get("value")


def add_executor(inputs: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
    return {"sum": inputs.get("a", 0) + inputs.get("b", 0)}


# =============================================================================
# FAKE REDIS
# =============================================================================

class FakeRedis:
    """In-process stand-in for the redis.asyncio commands RedisStore uses."""

    def __init__(self):
        self.strings: Dict[str, str] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.lists: Dict[str, List[str]] = defaultdict(list)
        self.expirations: Dict[str, int] = {}

    async def set(self, key: str, value: str, ex: Optional[int] = None,
                  nx: bool = False) -> Optional[bool]:
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        if ex is not None:
            self.expirations[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            removed += self.strings.pop(key, None) is not None
            self.expirations.pop(key, None)
        return removed

    async def get(self, key: str) -> Optional[str]:
        return self.strings.get(key)

    async def expire(self, key: str, ttl: int) -> bool:
        self.expirations[key] = ttl
        return True

    async def hset(self, key: str, field: Optional[str] = None, value: Any = None,
                   mapping: Optional[Dict[str, Any]] = None) -> int:
        target = self.hashes.setdefault(key, {})
        if mapping:
            target.update({k: str(v) for k, v in mapping.items()})
        if field is not None:
            target[field] = str(value)
        return 1

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def rpush(self, key: str, *values: str) -> int:
        self.lists[key].extend(values)
        return len(self.lists[key])

    async def lpush(self, key: str, *values: str) -> int:
        for value in values:
            self.lists[key].insert(0, value)
        return len(self.lists[key])

    async def lpop(self, key: str) -> Optional[str]:
        items = self.lists[key]
        return items.pop(0) if items else None

    async def blpop(self, keys: List[str], timeout: float = 0):
        for key in keys:
            if self.lists[key]:
                return key, self.lists[key].pop(0)
        return None

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        items = self.lists[key]
        self.lists[key] = items[start:] if end == -1 else items[start:end + 1]
        return True

    async def lrange(self, key: str, start: int, end: int) -> List[str]:
        items = self.lists[key]
        return list(items[start:] if end == -1 else items[start:end + 1])

    async def eval(self, script: str, numkeys: int, *args: str) -> int:
        key, expected, new = args[0], args[1], args[2]
        record = self.hashes.get(key)
        if record is not None and record.get("status") == expected:
            record["status"] = new
            return 1
        return 0


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings():
    return Settings(
        log_format="console",
        redis_enabled=False,
        max_concurrent_jobs=5,
        default_max_retries=3,
        max_pipeline_iterations=100,
        node_timeout=5.0,
        event_sink="memory",
    )


@pytest.fixture
def flaky():
    return FlakyExecutor()


@pytest.fixture
def gauge():
    return ConcurrencyGauge()


@pytest.fixture
def registry(flaky, gauge):
    registry = create_registry()
    registry.register("echo", lambda inputs, config: dict(inputs))
    registry.register("upper", UpperExecutor())
    registry.register("fail", FailingExecutor())
    registry.register("flaky", flaky)
    registry.register("gauge", gauge)
    registry.register("slow", slow_executor)
    registry.register("constant", constant_executor)
    registry.register("add", add_executor)
    return registry


@pytest.fixture
def compiler(registry):
    return WorkflowCompiler(registry)


@pytest.fixture
def resolver():
    return DataFlowResolver()


@pytest.fixture
def evaluator():
    return BranchEvaluator()


@pytest.fixture
def runtime(registry, resolver):
    return NodeRuntime(registry, resolver, default_timeout=5.0)


@pytest.fixture
def sink():
    return MemoryEventSink()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def sync_runner(compiler, runtime, resolver, evaluator, sink):
    return SynchronousRunner(compiler, runtime, resolver, evaluator, event_sink=sink)


@pytest.fixture
def runner(compiler, store, runtime, resolver, evaluator, sink, settings):
    return AsyncRunner(compiler, store, runtime, resolver, evaluator,
                       event_sink=sink, dlq=DLQHandler(store), settings=settings)


@pytest.fixture
def worker(store, runtime, runner):
    return JobWorker(store, runtime, runner, poll_interval=0.01)
