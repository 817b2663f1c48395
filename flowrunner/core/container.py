"""Dependency injection container for the execution engine."""

from dependency_injector import containers, providers

from flowrunner.core.cache import CacheService
from flowrunner.core.config import Settings
from flowrunner.core.logging import configure_logging, get_logger
from flowrunner.services.execution.async_runner import AsyncRunner
from flowrunner.services.execution.branching import BranchEvaluator
from flowrunner.services.execution.builtins import create_registry
from flowrunner.services.execution.compiler import WorkflowCompiler
from flowrunner.services.execution.dataflow import DataFlowResolver
from flowrunner.services.execution.dlq import create_dlq_handler
from flowrunner.services.execution.events import create_event_sink
from flowrunner.services.execution.runtime import NodeRuntime
from flowrunner.services.execution.store import create_store
from flowrunner.services.execution.sync_runner import SynchronousRunner
from flowrunner.services.execution.worker import JobWorker

logger = get_logger(__name__)


class Container(containers.DeclarativeContainer):
    """Engine dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Redis connection (store falls back to memory when unavailable)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    # Persistence + side channels
    store = providers.Singleton(
        create_store,
        cache=cache
    )

    event_sink = providers.Singleton(
        create_event_sink,
        kind=settings.provided.event_sink
    )

    dlq = providers.Singleton(
        create_dlq_handler,
        store=store,
        enabled=settings.provided.dlq_enabled
    )

    # Compilation
    registry = providers.Singleton(
        create_registry,
    )

    compiler = providers.Singleton(
        WorkflowCompiler,
        registry=registry
    )

    resolver = providers.Singleton(
        DataFlowResolver,
    )

    evaluator = providers.Singleton(
        BranchEvaluator,
    )

    runtime = providers.Singleton(
        NodeRuntime,
        registry=registry,
        resolver=resolver,
        default_timeout=settings.provided.node_timeout
    )

    # Runners
    sync_runner = providers.Factory(
        SynchronousRunner,
        compiler=compiler,
        runtime=runtime,
        resolver=resolver,
        evaluator=evaluator,
        event_sink=event_sink
    )

    async_runner = providers.Singleton(
        AsyncRunner,
        compiler=compiler,
        store=store,
        runtime=runtime,
        resolver=resolver,
        evaluator=evaluator,
        event_sink=event_sink,
        dlq=dlq,
        settings=settings
    )

    worker = providers.Singleton(
        JobWorker,
        store=store,
        runtime=runtime,
        runner=async_runner,
        poll_interval=settings.provided.worker_poll_interval,
        max_requeues=settings.provided.worker_max_requeues
    )


async def startup(container: "Container") -> None:
    """Configure logging and connect Redis before the store is first resolved."""
    settings = container.settings()
    configure_logging(settings)
    await container.cache().startup()
    logger.info("Engine started", store=type(container.store()).__name__,
                event_sink=settings.event_sink, dlq_enabled=settings.dlq_enabled)


async def shutdown(container: "Container") -> None:
    """Stop the worker and close the Redis connection."""
    worker = container.worker()
    if worker.is_running:
        await worker.stop()
    await container.cache().shutdown()
    logger.info("Engine stopped")


# Global container instance
container = Container()
