"""Executor registry - maps node type ids to executors.

Populated at startup and resolved by lookup. The compiler resolves every node
type through the registry so an unknown type fails at compile time.
"""

import inspect
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from flowrunner.core.logging import get_logger

logger = get_logger(__name__)


class NodeExecutorProtocol(Protocol):
    """Executor interface: resolved inputs + static config -> output record."""

    async def execute(self, inputs: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        ...


ExecutorLike = Union[NodeExecutorProtocol, Callable[[Dict[str, Any], Dict[str, Any]], Any]]


class ExecutorRegistry:
    """Type id -> executor id -> executor."""

    def __init__(self):
        self._type_map: Dict[str, str] = {}
        self._executors: Dict[str, ExecutorLike] = {}

    def register(self, type_id: str, executor: ExecutorLike,
                 executor_id: Optional[str] = None) -> str:
        """Register an executor for a node type.

        Args:
            type_id: Node typeId as found in workflow documents
            executor: Object with execute(inputs, config) or a callable
            executor_id: Shared id when several types use one executor

        Returns:
            The executor id the type resolves to
        """
        executor_id = executor_id or type_id
        if type_id in self._type_map:
            logger.warning("Replacing executor registration", type_id=type_id,
                           previous=self._type_map[type_id], executor_id=executor_id)
        self._type_map[type_id] = executor_id
        self._executors[executor_id] = executor
        return executor_id

    def resolve_executor_id(self, type_id: str) -> Optional[str]:
        return self._type_map.get(type_id)

    def has_type(self, type_id: str) -> bool:
        return type_id in self._type_map

    def get(self, executor_id: str) -> Optional[ExecutorLike]:
        return self._executors.get(executor_id)

    def list_types(self) -> List[str]:
        return sorted(self._type_map)

    async def invoke(self, executor_id: str, inputs: Dict[str, Any],
                     config: Dict[str, Any]) -> Any:
        """Call an executor, awaiting the result when it is a coroutine.

        Raises:
            KeyError: If no executor is registered under executor_id
        """
        executor = self._executors.get(executor_id)
        if executor is None:
            raise KeyError(f"Executor not registered: {executor_id}")

        handler = executor.execute if hasattr(executor, "execute") else executor
        result = handler(inputs, config)
        if inspect.isawaitable(result):
            result = await result
        return result
