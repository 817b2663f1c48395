"""Data flow between nodes: port resolution, validation, transformation, merge.

Handle format is {nodeId}-{direction}-{portName}, e.g. "node-1-output-text"
or "node-2-input-prompt". Field schemas are dicts keyed by field name:

    {
        "title": {"type": "string", "required": True, "min_length": 3},
        "count": {"type": "integer", "default": 0, "min_value": 0},
    }

Transformation rules are keyed by field name; each rule is a name or a dict
with a "type" key plus options:

    {"title": ["trim", "uppercase"], "when": [{"type": "format_date", "format": "%Y"}]}
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from flowrunner.core.logging import get_logger
from flowrunner.exceptions import DataFlowError
from .models import EdgeInfo, PortMapping

logger = get_logger(__name__)

DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

MERGE_STRATEGIES = ("append", "prepend", "replace", "merge_nested")


@dataclass(frozen=True)
class FieldViolation:
    """A single validation problem."""
    field: str
    code: str  # required | type | min_length | max_length | min_value | max_value
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


def extract_port_name(handle: Optional[str], direction: str) -> Optional[str]:
    """Port name after the first '-{direction}-' separator, or None.

    Examples:
        >>> extract_port_name("node-1-output-text", "output")
        'text'
        >>> extract_port_name("node-1", "output") is None
        True
    """
    if not handle:
        return None
    separator = f"-{direction}-"
    index = handle.find(separator)
    if index < 0:
        return None
    return handle[index + len(separator):] or None


def build_port_mapping(edge: EdgeInfo) -> PortMapping:
    """Parse an edge's handles into a port mapping."""
    return PortMapping(
        edge_id=edge.edge_id,
        source_node=edge.source,
        target_node=edge.target,
        source_port=extract_port_name(edge.source_handle, "output"),
        target_port=extract_port_name(edge.target_handle, "input"),
        is_trigger=edge.is_trigger,
        branch_name=edge.branch_name,
        has_handles=bool(edge.source_handle or edge.target_handle),
    )


def group_port_mappings(edges: Iterable[EdgeInfo]) -> Dict[str, Tuple[PortMapping, ...]]:
    """Incoming edges of one node -> {dependency node id: mappings}."""
    grouped: Dict[str, List[PortMapping]] = {}
    for edge in edges:
        grouped.setdefault(edge.source, []).append(build_port_mapping(edge))
    return {source: tuple(items) for source, items in grouped.items()}


# =============================================================================
# TYPE HELPERS
# =============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def matches_type(value: Any, expected: str) -> bool:
    """Type check; unknown declared types always pass."""
    if expected == "string":
        return isinstance(value, str)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "float":
        return _is_number(value)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "array":
        return isinstance(value, list)
    if expected == "object":
        return isinstance(value, dict)
    if expected == "null":
        return value is None
    return True


class DataFlowResolver:
    """Maps upstream outputs onto node inputs and shapes field-level data."""

    # =========================================================================
    # INPUT RESOLUTION
    # =========================================================================

    def resolve_inputs(self, node_id: str, context, input_mappings) -> Dict[str, Any]:
        """Build the input record for a node.

        Starts from the run's initial data. Port-mapped edges copy one value
        from the dependency output; edges without handles merge the whole
        dependency output. Trigger edges carry no data.

        Args:
            node_id: Node about to run
            context: ExecutionContext with node outputs
            input_mappings: CompiledPlan.input_mappings

        Returns:
            Input record for the node
        """
        inputs: Dict[str, Any] = dict(context.initial_data)

        for dependency_id, mappings in input_mappings.get(node_id, {}).items():
            output = context.get_node_output(dependency_id)
            if output is None:
                continue
            inputs = self._apply_mappings(inputs, output, mappings)

        return inputs

    def _apply_mappings(self, inputs: Dict[str, Any], output: Dict[str, Any],
                        mappings) -> Dict[str, Any]:
        for mapping in mappings:
            if mapping.is_trigger:
                continue
            if not mapping.has_handles:
                inputs = self.merge([inputs, output], "append")
                continue
            if mapping.source_port is None or mapping.target_port is None:
                logger.debug("Skipping unmapped edge", edge_id=mapping.edge_id)
                continue
            if isinstance(output, dict) and mapping.source_port in output:
                inputs[mapping.target_port] = output[mapping.source_port]
        return inputs

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate(self, data: Dict[str, Any], schema: Dict[str, Dict[str, Any]]) -> List[FieldViolation]:
        """Collect every schema violation in data (never fail-fast)."""
        violations: List[FieldViolation] = []

        for field_name, rules in schema.items():
            if rules.get("required") is True and field_name not in data:
                violations.append(FieldViolation(field_name, "required",
                                                 f'Missing required field "{field_name}"'))

        for field_name, rules in schema.items():
            if field_name not in data:
                continue
            value = data[field_name]
            expected = rules.get("type", "string")
            if not matches_type(value, expected):
                violations.append(FieldViolation(
                    field_name, "type",
                    f'Field "{field_name}" expected type "{expected}", got "{_type_name(value)}"'))

            if isinstance(value, str):
                if "min_length" in rules and len(value) < rules["min_length"]:
                    violations.append(FieldViolation(
                        field_name, "min_length",
                        f'Field "{field_name}" minimum length is {rules["min_length"]}, got {len(value)}'))
                if "max_length" in rules and len(value) > rules["max_length"]:
                    violations.append(FieldViolation(
                        field_name, "max_length",
                        f'Field "{field_name}" maximum length is {rules["max_length"]}, got {len(value)}'))

            if _is_number(value):
                if "min_value" in rules and value < rules["min_value"]:
                    violations.append(FieldViolation(
                        field_name, "min_value",
                        f'Field "{field_name}" minimum value is {rules["min_value"]}, got {value}'))
                if "max_value" in rules and value > rules["max_value"]:
                    violations.append(FieldViolation(
                        field_name, "max_value",
                        f'Field "{field_name}" maximum value is {rules["max_value"]}, got {value}'))

        return violations

    def validate_or_raise(self, data: Dict[str, Any], schema: Dict[str, Dict[str, Any]],
                          node_id: Optional[str] = None) -> None:
        violations = self.validate(data, schema)
        if violations:
            message = "; ".join(v.message for v in violations)
            logger.warning("Data flow validation failed", node_id=node_id,
                           violation_count=len(violations))
            raise DataFlowError(f"Data validation failed: {message}",
                                violations=violations, node_id=node_id)

    # =========================================================================
    # TRANSFORMATION
    # =========================================================================

    def transform(self, data: Dict[str, Any], schema: Dict[str, Dict[str, Any]],
                  rules: Optional[Dict[str, List[Any]]] = None) -> Dict[str, Any]:
        """Shape data to a target schema.

        Per field: rules in declared order, then the default when the value is
        absent, then a cast to the declared type. Fields absent from data with
        no default are left out.

        Raises:
            DataFlowError: Malformed json_decode input or an impossible cast
        """
        rules = rules or {}
        transformed: Dict[str, Any] = {}

        for field_name, field_config in schema.items():
            value = data.get(field_name)
            for rule in rules.get(field_name, []):
                value = self._apply_rule(field_name, value, rule)

            if value is None and "default" in field_config:
                value = field_config["default"]
            if value is None and field_name not in data:
                continue

            if value is not None and "type" in field_config:
                value = self._cast(field_name, value, field_config["type"])
            transformed[field_name] = value

        return transformed

    def _apply_rule(self, field_name: str, value: Any, rule: Union[str, Dict[str, Any]]) -> Any:
        if isinstance(rule, str):
            rule = {"type": rule}
        rule_type = rule.get("type", "none")

        if value is None:
            return None
        if rule_type == "uppercase":
            return value.upper() if isinstance(value, str) else value
        if rule_type == "lowercase":
            return value.lower() if isinstance(value, str) else value
        if rule_type == "trim":
            return value.strip() if isinstance(value, str) else value
        if rule_type == "format_date":
            return self._format_date(value, rule.get("format", DEFAULT_DATE_FORMAT))
        if rule_type == "json_encode":
            if isinstance(value, (dict, list)):
                return json.dumps(value, separators=(",", ":"))
            return value
        if rule_type == "json_decode":
            if not isinstance(value, str):
                return value
            try:
                return json.loads(value)
            except json.JSONDecodeError as e:
                raise DataFlowError(f'JSON decode failed for field "{field_name}": {e.msg}') from e

        logger.debug("Unknown transformation rule", rule=rule_type, field=field_name)
        return value

    def _format_date(self, value: Any, fmt: str) -> Any:
        if _is_number(value):
            return datetime.fromtimestamp(value, tz=timezone.utc).strftime(fmt)
        if isinstance(value, str):
            text = value.strip()
            try:
                return datetime.fromtimestamp(float(text), tz=timezone.utc).strftime(fmt)
            except (ValueError, OverflowError, OSError):
                pass
            for parse in (lambda s: datetime.strptime(s, "%Y-%m-%d"), datetime.fromisoformat):
                try:
                    parsed = parse(text)
                except ValueError:
                    continue
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return parsed.astimezone(timezone.utc).strftime(fmt)
            return value
        return str(value)

    def _cast(self, field_name: str, value: Any, target_type: str) -> Any:
        try:
            if target_type == "string":
                if isinstance(value, (dict, list)):
                    return json.dumps(value)
                if isinstance(value, bool):
                    return "true" if value else "false"
                return str(value)
            if target_type == "integer":
                if isinstance(value, str):
                    return int(float(value.strip()))
                return int(value)
            if target_type == "float":
                return float(value.strip() if isinstance(value, str) else value)
            if target_type == "boolean":
                if isinstance(value, str):
                    return value.strip().lower() not in ("", "0", "false", "no", "off")
                return bool(value)
            if target_type == "array":
                if isinstance(value, list):
                    return value
                if isinstance(value, tuple):
                    return list(value)
                return [value]
        except (TypeError, ValueError, OverflowError) as e:
            raise DataFlowError(
                f'Cannot cast field "{field_name}" value {value!r} to {target_type}') from e
        return value

    # =========================================================================
    # MERGE
    # =========================================================================

    def merge(self, sources: Union[List[Dict[str, Any]], Dict[str, Dict[str, Any]]],
              strategy: Union[str, Dict[str, str]] = "append") -> Dict[str, Any]:
        """Combine several records into one.

        Args:
            sources: Records in order, or {source_id: record} in insertion order
            strategy: One strategy for all sources, or per source id

        Strategies:
            append / replace: later sources win on key collision
            prepend: earlier sources win
            merge_nested: deep-merge dicts, lists are overwritten
        """
        if isinstance(sources, dict):
            items = list(sources.items())
        else:
            items = [(str(i), source) for i, source in enumerate(sources)]

        merged: Dict[str, Any] = {}
        for source_id, data in items:
            name = strategy.get(source_id, "append") if isinstance(strategy, dict) else strategy
            if name not in MERGE_STRATEGIES:
                logger.warning("Unknown merge strategy, using append", strategy=name)
                name = "append"

            if name in ("append", "replace"):
                merged = {**merged, **data}
            elif name == "prepend":
                merged = {**data, **merged}
            else:
                merged = _deep_merge(merged, data)

        return merged

    # =========================================================================
    # NODE SCHEMA
    # =========================================================================

    def apply_node_schema(self, node_id: str, inputs: Dict[str, Any],
                          config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a node's `input_schema` (and `input_rules`) to its inputs.

        Non-schema inputs pass through unchanged.

        Raises:
            DataFlowError: On transform failure or validation violations
        """
        schema = config.get("input_schema")
        if not schema:
            return inputs
        transformed = self.transform(inputs, schema, config.get("input_rules"))
        shaped = {**inputs, **transformed}
        self.validate_or_raise(shaped, schema, node_id=node_id)
        return shaped


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overlay.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
