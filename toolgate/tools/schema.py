"""JSON-Schema validation and schema-driven default values for tool arguments."""
import copy
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from toolgate.llm.tools import Tool

logger = logging.getLogger(__name__)

# Filler repeated to satisfy a string's minLength when no default is declared
STRING_FILLER = "x"

FORMAT_DEFAULTS = {
    "date": "2023-01-01",
    "date-time": "2023-01-01T00:00:00Z",
    "email": "user@example.com",
    "uri": "https://example.com",
    "url": "https://example.com",
}

_REQUIRED_RE = re.compile(r"^'([^']+)' is a required property")


class SchemaDefinitionError(Exception):
    """The tool's own input_schema is not a valid JSON Schema."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Invalid schema for tool '{tool_name}': {message}")
        self.tool_name = tool_name


class ParameterFixError(Exception):
    """Missing required fields could not be filled into a schema-valid value."""

    def __init__(self, violations: List["SchemaViolation"]):
        super().__init__("; ".join(str(v) for v in violations))
        self.violations = violations


@dataclass(frozen=True)
class SchemaViolation:
    """One schema violation: where it happened, which keyword failed, and why."""
    path: Tuple[Any, ...]
    validator: str
    message: str
    missing_field: Optional[str] = None

    @property
    def field(self) -> Optional[str]:
        """Top-level field responsible for the violation, if known."""
        if self.path:
            return str(self.path[0])
        return self.missing_field

    def __str__(self) -> str:
        if self.path:
            return f"Field '{'.'.join(str(p) for p in self.path)}': {self.message}"
        return self.message


def _compile(tool: Tool) -> Draft7Validator:
    schema = tool.input_schema
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        raise SchemaDefinitionError(tool.name, e.message) from e
    return Draft7Validator(schema)


def check_schema(tool: Tool) -> None:
    """Raise SchemaDefinitionError if the tool's schema does not compile."""
    _compile(tool)


def validate(tool: Tool, value: Any) -> List[SchemaViolation]:
    """Validate value against the tool's schema and return every violation.

    An empty list means the value is valid.
    """
    validator = _compile(tool)
    violations = []
    for error in sorted(validator.iter_errors(value), key=lambda e: [str(p) for p in e.absolute_path]):
        missing = None
        if error.validator == "required" and not error.absolute_path:
            m = _REQUIRED_RE.match(error.message)
            missing = m.group(1) if m else None
        violations.append(SchemaViolation(
            path=tuple(error.absolute_path),
            validator=str(error.validator),
            message=error.message,
            missing_field=missing,
        ))
    return violations


def _primary_type(prop_schema: Dict[str, Any]) -> Optional[str]:
    declared = prop_schema.get("type")
    if isinstance(declared, list):
        non_null = [t for t in declared if t != "null"]
        if non_null:
            return non_null[0]
        return "null" if declared else None
    return declared


def default_for(prop_schema: Any) -> Any:
    """Return a value for a property schema: its declared default, else a type-appropriate zero value."""
    if not isinstance(prop_schema, dict):
        return None
    if "default" in prop_schema:
        return copy.deepcopy(prop_schema["default"])

    enum_values = prop_schema.get("enum")
    if isinstance(enum_values, list) and enum_values:
        return copy.deepcopy(enum_values[0])
    if "const" in prop_schema:
        return copy.deepcopy(prop_schema["const"])

    kind = _primary_type(prop_schema)
    if kind == "string":
        fmt = prop_schema.get("format")
        if fmt in FORMAT_DEFAULTS:
            return FORMAT_DEFAULTS[fmt]
        min_length = prop_schema.get("minLength")
        if isinstance(min_length, int) and min_length > 0:
            return STRING_FILLER * min_length
        return ""
    if kind in ("number", "integer"):
        return _numeric_default(prop_schema, integer=(kind == "integer"))
    if kind == "boolean":
        return False
    if kind == "array":
        items = prop_schema.get("items")
        min_items = prop_schema.get("minItems")
        if isinstance(items, dict) and isinstance(min_items, int) and min_items > 0:
            return [default_for(items) for _ in range(min_items)]
        return []
    if kind == "object":
        obj = {}
        properties = prop_schema.get("properties") or {}
        for field in prop_schema.get("required") or []:
            if field in properties:
                obj[field] = default_for(properties[field])
        return obj
    return None


def _numeric_default(prop_schema: Dict[str, Any], integer: bool) -> Any:
    value = 0
    minimum = prop_schema.get("minimum")
    exclusive_minimum = prop_schema.get("exclusiveMinimum")
    maximum = prop_schema.get("maximum")
    if isinstance(minimum, (int, float)) and not isinstance(minimum, bool) and value < minimum:
        value = minimum
    if isinstance(exclusive_minimum, (int, float)) and not isinstance(exclusive_minimum, bool) and value <= exclusive_minimum:
        value = exclusive_minimum + 1 if integer else exclusive_minimum + 0.5
    if isinstance(maximum, (int, float)) and not isinstance(maximum, bool) and value > maximum:
        value = maximum
    if integer:
        return int(math.ceil(value))
    return value


def fix_required_fields(tool: Tool, value: Any) -> Any:
    """Fill every required-but-missing field with default_for() and re-validate.

    Raises ParameterFixError if the result still violates the schema.
    """
    fixed = copy.deepcopy(value) if isinstance(value, dict) else {}
    properties = tool.input_schema.get("properties") or {}
    for field in tool.input_schema.get("required") or []:
        if field not in fixed and field in properties:
            fixed[field] = default_for(properties[field])
            logger.debug(f"[SCHEMA FIX] Tool '{tool.name}': filled required field '{field}' with {fixed[field]!r}")
    violations = validate(tool, fixed)
    if violations:
        raise ParameterFixError(violations)
    return fixed


def json_type(value: Any) -> str:
    """JSON type name of a Python value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def type_matches(value: Any, declared: Any) -> bool:
    """True if value's JSON type satisfies a schema ``type`` keyword (absent type matches anything)."""
    if declared is None:
        return True
    allowed = declared if isinstance(declared, list) else [declared]
    actual = json_type(value)
    for expected in allowed:
        if expected == actual:
            return True
        if expected == "number" and actual == "integer":
            return True
        if expected == "integer" and actual == "number" and float(value).is_integer():
            return True
    return False
