"""Built-in node executors: passthrough and gateway nodes."""

from typing import Any, Dict, List

from flowrunner.constants import GATEWAY_TYPES, PASSTHROUGH_TYPES
from flowrunner.core.logging import get_logger
from .conditions import evaluate_conditions
from .registry import ExecutorRegistry

logger = get_logger(__name__)


class PassthroughExecutor:
    """Forwards resolved inputs unchanged (triggers, text input/output)."""

    async def execute(self, inputs: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        return dict(inputs)


class GatewayExecutor:
    """Selects active branches from its inputs.

    Config:
        active_branches: Static branch list or comma string; wins when set
        branches: [{"name": "high", "conditions": [...], "logic": "and"}]
        default_branch: Used when no branch matches
        first_match: Stop at the first matching branch (default False)

    The output is the inputs plus "active_branches" as a comma-separated
    string; an empty string activates no branch.
    """

    async def execute(self, inputs: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        static = config.get("active_branches")
        if static is not None:
            active = [static] if isinstance(static, str) else [str(b) for b in static]
        else:
            active = self._select(inputs, config)

        output = dict(inputs)
        output["active_branches"] = ",".join(active)
        return output

    def _select(self, inputs: Dict[str, Any], config: Dict[str, Any]) -> List[str]:
        active: List[str] = []
        for branch in config.get("branches") or []:
            name = branch.get("name")
            if not name:
                continue
            if evaluate_conditions(branch.get("conditions") or [], inputs,
                                   branch.get("logic", "and")):
                active.append(name)
                if config.get("first_match"):
                    break

        if not active and config.get("default_branch"):
            active.append(config["default_branch"])
        logger.debug("Gateway branches selected", active=active)
        return active


def register_builtin_executors(registry: ExecutorRegistry) -> ExecutorRegistry:
    """Register passthrough and gateway executors under their node types."""
    passthrough = PassthroughExecutor()
    for type_id in sorted(PASSTHROUGH_TYPES):
        registry.register(type_id, passthrough, executor_id="passthrough")

    gateway = GatewayExecutor()
    for type_id in sorted(GATEWAY_TYPES):
        registry.register(type_id, gateway, executor_id="gateway")
    return registry


def create_registry() -> ExecutorRegistry:
    """Registry preloaded with the built-in executors."""
    return register_builtin_executors(ExecutorRegistry())
