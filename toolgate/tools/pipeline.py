"""Sanitize, validate, auto-fix and recover tool-call arguments.

``ValidationPipeline.validate_input`` never raises for bad arguments: it
returns exactly one of ``Valid``, ``Sanitized``, ``Recovered`` or ``Invalid``.
Only a broken tool schema (``SchemaDefinitionError``) propagates.

Every value carried by ``Valid``, ``Sanitized.sanitized`` and
``Recovered.recovered`` has been re-validated against the tool's schema.
"""
import copy
import logging
import os
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from dotenv import load_dotenv

from toolgate.llm.tools import Tool
from .schema import (
    ParameterFixError,
    SchemaViolation,
    check_schema,
    default_for,
    fix_required_fields,
    json_type,
    type_matches,
    validate,
)

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = int(os.getenv("TOOLGATE_MAX_DEPTH", "10"))
DEFAULT_MAX_STRING_LENGTH = int(os.getenv("TOOLGATE_MAX_STRING_LENGTH", "1000"))
DEFAULT_MAX_ALTERNATIVES = int(os.getenv("TOOLGATE_MAX_ALTERNATIVES", "3"))
DEFAULT_PATH = os.getenv("TOOLGATE_DEFAULT_PATH", ".")


# ---------------------------------------------------------------------------
# Recovery strategies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DefaultValue:
    field: str
    value: Any

    def describe(self) -> str:
        return f"Set '{self.field}' to schema default {self.value!r}"

    def to_dict(self) -> Dict[str, Any]:
        return {"strategy": "default_value", "field": self.field, "value": self.value}


@dataclass(frozen=True)
class FallbackValue:
    field: str
    value: Any

    def describe(self) -> str:
        return f"Set '{self.field}' to configured fallback {self.value!r}"

    def to_dict(self) -> Dict[str, Any]:
        return {"strategy": "fallback_value", "field": self.field, "value": self.value}


@dataclass(frozen=True)
class RemovedField:
    field: str

    def describe(self) -> str:
        return f"Removed field '{self.field}'"

    def to_dict(self) -> Dict[str, Any]:
        return {"strategy": "removed_field", "field": self.field}


@dataclass(frozen=True)
class ReplacedValue:
    field: str
    original: Any
    replacement: Any

    def describe(self) -> str:
        return f"Replaced '{self.field}' value {self.original!r} with {self.replacement!r}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": "replaced_value",
            "field": self.field,
            "original": self.original,
            "replacement": self.replacement,
        }


@dataclass(frozen=True)
class Other:
    description: str

    def describe(self) -> str:
        return self.description

    def to_dict(self) -> Dict[str, Any]:
        return {"strategy": "other", "description": self.description}


RecoveryStrategy = Union[DefaultValue, FallbackValue, RemovedField, ReplacedValue, Other]


# ---------------------------------------------------------------------------
# Validation outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Valid:
    """Arguments satisfied the schema as given."""
    args: Any

    is_valid = True

    @property
    def value(self) -> Any:
        return self.args

    def to_dict(self) -> Dict[str, Any]:
        return {"state": "valid", "value": self.args}


@dataclass(frozen=True)
class Sanitized:
    """Arguments were cleaned up or filled from declared schema defaults."""
    original: Any
    sanitized: Any
    changes: Tuple[str, ...] = ()

    is_valid = True

    @property
    def value(self) -> Any:
        return self.sanitized

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": "sanitized",
            "original": self.original,
            "value": self.sanitized,
            "changes": list(self.changes),
        }


@dataclass(frozen=True)
class Recovered:
    """Schema validation failed; recovery strategies produced valid arguments."""
    original: Any
    recovered: Any
    strategies: Tuple[RecoveryStrategy, ...] = ()
    errors: Tuple[str, ...] = ()

    is_valid = True

    @property
    def value(self) -> Any:
        return self.recovered

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": "recovered",
            "original": self.original,
            "value": self.recovered,
            "strategies": [s.to_dict() for s in self.strategies],
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class Invalid:
    """No recovery succeeded."""
    input: Any
    errors: Tuple[str, ...] = ()
    alternative_tools: Tuple[str, ...] = ()

    is_valid = False

    @property
    def value(self) -> Any:
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": "invalid",
            "input": self.input,
            "errors": list(self.errors),
            "alternative_tools": list(self.alternative_tools),
        }


ValidationState = Union[Valid, Sanitized, Recovered, Invalid]


# ---------------------------------------------------------------------------
# Configuration tables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PrefillRule:
    """Fill a blank path-shaped required field for tools whose name matches a pattern."""
    name_pattern: str
    value: Any
    fields: Tuple[str, ...] = ("path",)

    def matches(self, tool_name: str) -> bool:
        return re.search(self.name_pattern, tool_name, re.IGNORECASE) is not None


DEFAULT_PREFILL_RULES: Tuple[PrefillRule, ...] = (
    PrefillRule(r"(directory|folder|dir_tree|list_dir)", DEFAULT_PATH, ("path", "directory", "dir")),
    PrefillRule(r"^(list|search|find)_files?$", DEFAULT_PATH, ("path",)),
)

# Well-known substitutes for generic tool names
DEFAULT_SUBSTITUTIONS: Dict[str, Tuple[str, ...]] = {
    "read_file": ("filesystem_read_file", "read_text_file"),
    "write_file": ("filesystem_write_file",),
    "list_files": ("list_directory",),
    "list_dir": ("list_directory",),
    "search": ("search_files",),
    "find_files": ("search_files",),
}


# ---------------------------------------------------------------------------
# Sanitizing helpers
# ---------------------------------------------------------------------------

_BARE_AMPERSAND_RE = re.compile(r"&(?!(?:amp|lt|gt|quot|#x27|#39);)")
_PARTIAL_ENTITY_RE = re.compile(r"&[#\w]*$")

# Textual patterns for field names inside opaque error messages
_FIELD_PATTERNS = (
    re.compile(r"instance\.([A-Za-z_][\w-]*)"),
    re.compile(r"instance\[['\"]([^'\"]+)['\"]\]"),
    re.compile(r"\b(?:field|property|value|parameter)\s+['\"`]?([A-Za-z_][\w-]*)", re.IGNORECASE),
    re.compile(r"['\"`]([A-Za-z_][\w-]*)['\"`]"),
)


class _DepthExceeded(Exception):
    pass


def escape_html(text: str) -> str:
    """HTML-escape &<>"' without re-escaping entities produced by an earlier pass."""
    text = _BARE_AMPERSAND_RE.sub("&amp;", text)
    return (
        text.replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#x27;")
    )


def strip_control_chars(text: str) -> str:
    return "".join(c for c in text if c in "\n\t" or unicodedata.category(c) != "Cc")


def extract_field_names(message: str) -> List[str]:
    """Best-effort field names mentioned in an error message, in order of appearance."""
    found: List[str] = []
    for pattern in _FIELD_PATTERNS:
        for name in pattern.findall(message):
            if name and name not in found:
                found.append(name)
    return found


class ValidationPipeline:
    """Turns raw tool-call arguments into a classified ValidationState.

    Configuration is fixed at construction; use ``replace()`` or
    ``with_available_tools()`` to derive a differently configured pipeline.
    """

    def __init__(
        self,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_string_length: int = DEFAULT_MAX_STRING_LENGTH,
        auto_fix: bool = True,
        fallback_values: Optional[Mapping[str, Any]] = None,
        suggest_alternatives: bool = True,
        max_alternatives: int = DEFAULT_MAX_ALTERNATIVES,
        available_tools: Optional[Iterable[Tool]] = None,
        prefill_rules: Optional[Sequence[PrefillRule]] = None,
        substitutions: Optional[Mapping[str, Sequence[str]]] = None,
    ):
        self._max_depth = max_depth
        self._max_string_length = max_string_length
        self._auto_fix = auto_fix
        self._fallback_values = dict(copy.deepcopy(fallback_values or {}))
        self._suggest_alternatives = suggest_alternatives
        self._max_alternatives = max_alternatives
        self._available_tools = tuple(available_tools or ())
        self._prefill_rules = tuple(DEFAULT_PREFILL_RULES if prefill_rules is None else prefill_rules)
        self._substitutions = {
            name: tuple(subs)
            for name, subs in (DEFAULT_SUBSTITUTIONS if substitutions is None else substitutions).items()
        }

    @property
    def max_depth(self) -> int:
        return self._max_depth

    @property
    def max_string_length(self) -> int:
        return self._max_string_length

    @property
    def auto_fix(self) -> bool:
        return self._auto_fix

    @property
    def fallback_values(self) -> Dict[str, Any]:
        return copy.deepcopy(self._fallback_values)

    @property
    def available_tools(self) -> Tuple[Tool, ...]:
        return self._available_tools

    def replace(self, **overrides: Any) -> "ValidationPipeline":
        params = dict(
            max_depth=self._max_depth,
            max_string_length=self._max_string_length,
            auto_fix=self._auto_fix,
            fallback_values=self._fallback_values,
            suggest_alternatives=self._suggest_alternatives,
            max_alternatives=self._max_alternatives,
            available_tools=self._available_tools,
            prefill_rules=self._prefill_rules,
            substitutions=self._substitutions,
        )
        params.update(overrides)
        return ValidationPipeline(**params)

    def with_available_tools(self, tools: Iterable[Tool]) -> "ValidationPipeline":
        return self.replace(available_tools=tuple(tools))

    # -----------------------------------------------------------------------

    def validate_input(self, tool: Tool, input: Any) -> ValidationState:
        """Validate and, where possible, repair arguments for ``tool``."""
        check_schema(tool)
        original = copy.deepcopy(input)
        changes: List[str] = []
        errors: List[str] = []

        working = self._prefill(tool, copy.deepcopy(input), changes)

        try:
            sanitized = self._sanitize_value(working, 0, changes, errors, "")
        except _DepthExceeded as e:
            logger.warning(f"[VALIDATION] Tool '{tool.name}': input rejected: {e}")
            return self._invalid(tool, original, [str(e)])

        if errors and not self._auto_fix:
            logger.info(f"[VALIDATION] Tool '{tool.name}': {len(errors)} sanitize errors with auto-fix disabled")
            return self._invalid(tool, original, errors)

        violations = validate(tool, sanitized)
        if not violations:
            if not changes:
                return Valid(sanitized)
            logger.info(f"[VALIDATION] Tool '{tool.name}': sanitized with {len(changes)} changes")
            return Sanitized(original, sanitized, tuple(changes))

        messages = errors + [str(v) for v in violations]
        if not self._auto_fix:
            logger.info(f"[VALIDATION] Tool '{tool.name}': {len(violations)} schema violations, auto-fix disabled")
            return self._invalid(tool, original, messages)

        properties = tool.input_schema.get("properties") or {}
        missing = [
            f for f in tool.input_schema.get("required") or []
            if f in properties and (not isinstance(sanitized, dict) or f not in sanitized)
        ]
        try:
            fixed = fix_required_fields(tool, sanitized)
        except ParameterFixError as e:
            logger.info(f"[VALIDATION] Tool '{tool.name}': auto-fix failed ({e}); attempting recovery")
            return self._recover(tool, original, sanitized, violations, changes, messages)

        synthesized = [f for f in missing if "default" not in properties[f]]
        fix_changes: List[str] = []
        if not isinstance(sanitized, dict):
            fix_changes.append(f"Replaced non-object input ({json_type(sanitized)}) with an object")
        if not synthesized:
            fix_changes.extend(f"Filled missing required field '{f}' with its schema default" for f in missing)

        # Filled values go through the same sanitizing as the input
        fix_errors: List[str] = []
        try:
            fixed = self._sanitize_value(fixed, 0, fix_changes, fix_errors, "")
        except _DepthExceeded as e:
            fix_errors.append(str(e))
        remaining = validate(tool, fixed) if not fix_errors else violations
        if fix_errors or remaining:
            logger.info(f"[VALIDATION] Tool '{tool.name}': auto-fixed value failed after sanitizing; attempting recovery")
            return self._recover(tool, original, sanitized, remaining, changes, messages + fix_errors)
        changes.extend(fix_changes)

        if not synthesized:
            logger.info(f"[VALIDATION] Tool '{tool.name}': auto-fixed missing fields {missing}")
            return Sanitized(original, fixed, tuple(changes))

        # Invented values are a guess, not a cosmetic fix
        strategies: List[RecoveryStrategy] = [Other(c) for c in changes]
        strategies.extend(DefaultValue(f, copy.deepcopy(fixed[f])) for f in missing)
        logger.info(f"[VALIDATION] Tool '{tool.name}': recovered by synthesizing defaults for {synthesized}")
        return Recovered(original, fixed, tuple(strategies), tuple(messages))

    # -----------------------------------------------------------------------

    def _prefill(self, tool: Tool, value: Any, changes: List[str]) -> Any:
        if not isinstance(value, dict):
            return value
        properties = tool.input_schema.get("properties") or {}
        required = tool.input_schema.get("required") or []
        for rule in self._prefill_rules:
            if not rule.matches(tool.name):
                continue
            for name in rule.fields:
                if name not in required:
                    continue
                prop = properties.get(name)
                if isinstance(prop, dict) and not type_matches("", prop.get("type")):
                    continue
                current = value.get(name)
                if current is None or (isinstance(current, str) and not current.strip()):
                    value[name] = copy.deepcopy(rule.value)
                    changes.append(f"Pre-filled '{name}' with default path {rule.value!r}")
        return value

    def _sanitize_string(self, text: str) -> str:
        out = escape_html(strip_control_chars(text).strip())
        if len(out) > self._max_string_length:
            out = _PARTIAL_ENTITY_RE.sub("", out[:self._max_string_length]).rstrip()
        return out

    def _sanitize_field(self, name: str, value: Any, changes: List[str], errors: List[str]) -> Any:
        """Sanitize a value inserted during recovery as a top-level field."""
        try:
            return self._sanitize_value(copy.deepcopy(value), 1, changes, errors, name)
        except _DepthExceeded as e:
            errors.append(f"Error in field '{name}': {e}")
            return None

    def _sanitize_value(self, value: Any, depth: int, changes: List[str], errors: List[str], path: str) -> Any:
        if depth > self._max_depth:
            raise _DepthExceeded(f"Maximum nesting depth of {self._max_depth} exceeded")

        if isinstance(value, dict):
            clean: Dict[str, Any] = {}
            for key, val in value.items():
                key_str = str(key)
                clean_key = self._sanitize_string(key_str)
                location = f"{path}.{clean_key}" if path else clean_key
                if clean_key in clean:
                    errors.append(f"Error in field '{key_str}': duplicates key '{clean_key}' after sanitizing")
                    changes.append(f"Dropped {key_str!r}: duplicate of key '{location}'")
                    continue
                if clean_key != key:
                    changes.append(f"Sanitized object key: {key_str!r} -> {clean_key!r}")
                try:
                    clean[clean_key] = self._sanitize_value(val, depth + 1, changes, errors, location)
                except _DepthExceeded as e:
                    errors.append(f"Error in field '{key_str}': {e}")
                    changes.append(f"Dropped '{location}': {e}")
            return clean

        if isinstance(value, (list, tuple)):
            clean_list: List[Any] = []
            for i, val in enumerate(value):
                location = f"{path}[{i}]"
                try:
                    clean_list.append(self._sanitize_value(val, depth + 1, changes, errors, location))
                except _DepthExceeded as e:
                    errors.append(f"Error in array index {i}: {e}")
                    changes.append(f"Dropped '{location}': {e}")
            if isinstance(value, tuple):
                changes.append(f"Converted tuple at '{path or '<root>'}' to array")
            return clean_list

        if isinstance(value, str):
            clean_str = self._sanitize_string(value)
            if clean_str != value:
                changes.append(f"Sanitized string value at '{path or '<root>'}'")
            return clean_str

        if value is None or isinstance(value, (bool, int, float)):
            return value

        # Not a JSON type; keep its text form
        clean_str = self._sanitize_string(str(value))
        changes.append(f"Converted {type(value).__name__} at '{path or '<root>'}' to string")
        return clean_str

    # -----------------------------------------------------------------------

    def _candidate_fields(
        self,
        violations: List[SchemaViolation],
        recovered: Dict[str, Any],
        properties: Dict[str, Any],
        required: List[str],
    ) -> List[str]:
        candidates: List[str] = []
        for violation in violations:
            names = [violation.field] if violation.field else [
                n for n in extract_field_names(str(violation))
                if n in recovered or n in properties
            ]
            for name in names:
                if name not in candidates:
                    candidates.append(name)
        if not candidates:
            candidates = list(recovered.keys()) + [r for r in required if r not in recovered]
        return candidates

    def _recover(
        self,
        tool: Tool,
        original: Any,
        sanitized: Any,
        violations: List[SchemaViolation],
        changes: List[str],
        messages: List[str],
    ) -> ValidationState:
        schema = tool.input_schema
        properties = schema.get("properties") or {}
        required = list(schema.get("required") or [])
        strategies: List[RecoveryStrategy] = []

        if isinstance(sanitized, dict):
            recovered = copy.deepcopy(sanitized)
        else:
            recovered = {}
            strategies.append(Other(f"Replaced non-object input ({json_type(sanitized)}) with an empty object"))

        notes: List[str] = []
        sanitize_errors: List[str] = []

        for name in self._candidate_fields(violations, recovered, properties, required):
            if name in self._fallback_values:
                value = self._sanitize_field(name, self._fallback_values[name], notes, sanitize_errors)
                recovered[name] = value
                strategies.append(FallbackValue(name, value))
            elif isinstance(properties.get(name), dict):
                value = self._sanitize_field(name, default_for(properties[name]), notes, sanitize_errors)
                recovered[name] = value
                strategies.append(DefaultValue(name, value))
            elif name not in required and name in recovered:
                del recovered[name]
                strategies.append(RemovedField(name))

        for name, current in list(recovered.items()):
            prop = properties.get(name)
            if not isinstance(prop, dict) or type_matches(current, prop.get("type")):
                continue
            replacement = self._sanitize_field(name, default_for(prop), notes, sanitize_errors)
            recovered[name] = replacement
            strategies.append(ReplacedValue(name, current, replacement))

        if not strategies and self._fallback_values:
            for name, fallback in self._fallback_values.items():
                value = self._sanitize_field(name, fallback, notes, sanitize_errors)
                recovered[name] = value
                strategies.append(FallbackValue(name, value))

        strategies.extend(Other(n) for n in notes)
        if sanitize_errors:
            logger.info(f"[RECOVERY] Tool '{tool.name}': recovered values failed sanitizing")
            return self._invalid(tool, original, messages + sanitize_errors)

        remaining = validate(tool, recovered)
        if remaining:
            logger.info(f"[RECOVERY] Tool '{tool.name}': recovery failed with {len(remaining)} violations left")
            return self._invalid(
                tool,
                original,
                messages + [f"Recovery failed: {v}" for v in remaining],
            )

        logger.info(
            f"[RECOVERY] Tool '{tool.name}': recovered with strategies "
            f"{[s.describe() for s in strategies]}"
        )
        all_strategies = [Other(c) for c in changes] + strategies
        return Recovered(original, recovered, tuple(all_strategies), tuple(messages))

    def _invalid(self, tool: Tool, original: Any, errors: List[str]) -> Invalid:
        return Invalid(original, tuple(errors), self.alternative_tools_for(tool, original))

    def alternative_tools_for(self, tool: Tool, input: Any) -> Tuple[str, ...]:
        """Rank other tools whose schema properties overlap the failed input's fields."""
        if not self._suggest_alternatives or not isinstance(input, dict) or self._max_alternatives <= 0:
            return ()
        fields = {str(k) for k in input.keys()}
        scored: List[Tuple[str, float]] = []
        for other in self._available_tools:
            if other.name == tool.name:
                continue
            props = set((other.input_schema.get("properties") or {}).keys())
            overlap = len(fields & props)
            if overlap == 0:
                continue
            scored.append((other.name, 2.0 * overlap / (len(fields) + len(props))))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        names = [name for name, _ in scored[:self._max_alternatives]]

        for substitute in self._substitutions.get(tool.name, ()):
            if len(names) >= self._max_alternatives:
                break
            if substitute != tool.name and substitute not in names:
                names.append(substitute)
        return tuple(names)
