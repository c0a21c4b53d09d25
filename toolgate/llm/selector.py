"""LLM-backed tool selection with parameter validation, repair and caching."""
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from dotenv import load_dotenv
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from toolgate.llm.agent import OPENROUTER_MODEL, call_openrouter
from toolgate.llm.tools import Tool, find_tool_by_name
from toolgate.tools.cache import SelectionCache
from toolgate.tools.pipeline import Valid, ValidationPipeline
from toolgate.tools.utils import best_tools_for_query, detect_tool_suggestion, strip_code_fences

load_dotenv()

logger = logging.getLogger(__name__)

TOOL_SELECTION_MAX_PROMPT_TOOLS = int(os.getenv("TOOL_SELECTION_MAX_PROMPT_TOOLS", "20"))
MAX_SELECTION_ATTEMPTS = 2
SELECTION_TEMPERATURE = 0.1
SELECTION_MAX_TOKENS = 1024
# Confidence given to a tool found only by scanning free text
HEURISTIC_CONFIDENCE = 0.5

ChatFn = Callable[..., Awaitable[Dict[str, Any]]]


# ---------------------------------------------------------------------------
# Parameter validation status
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParametersValid:
    is_valid = True

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "valid"}


@dataclass(frozen=True)
class ParametersFixed:
    original: Any
    fixed: Any

    is_valid = True

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "fixed", "original": self.original, "fixed": self.fixed}


@dataclass(frozen=True)
class ParametersFailed:
    error: str

    is_valid = False

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "failed", "error": self.error}


ValidationStatus = Union[ParametersValid, ParametersFixed, ParametersFailed]


@dataclass(frozen=True)
class ToolMatch:
    tool: Tool
    confidence: float
    suggested_parameters: Any
    reasoning: str
    validation_status: ValidationStatus

    @property
    def is_valid(self) -> bool:
        return self.validation_status.is_valid

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_name": self.tool.name,
            "confidence": self.confidence,
            "parameters": self.suggested_parameters,
            "reasoning": self.reasoning,
            "validation": self.validation_status.to_dict(),
        }


@dataclass(frozen=True)
class RankedToolSelection:
    """Candidates for one query, in the order the model returned them."""
    query: str
    matches: Tuple[ToolMatch, ...] = ()
    reasoning: str = ""
    from_cache: bool = False
    heuristic: bool = False

    def best_match(self) -> Optional[ToolMatch]:
        best: Optional[ToolMatch] = None
        for match in self.matches:
            if best is None or match.confidence > best.confidence:
                best = match
        return best

    def matches_above(self, threshold: float) -> List[ToolMatch]:
        return [m for m in self.matches if m.confidence >= threshold]

    def valid_matches(self, threshold: float = 0.0) -> List[ToolMatch]:
        return [m for m in self.matches if m.confidence >= threshold and m.is_valid]

    def best_valid_match(self, threshold: float = 0.0) -> Optional[ToolMatch]:
        best: Optional[ToolMatch] = None
        for match in self.valid_matches(threshold):
            if best is None or match.confidence > best.confidence:
                best = match
        return best

    def to_dict(self, threshold: float = 0.0) -> Dict[str, Any]:
        best = self.best_match()
        return {
            "query": self.query,
            "matches": [m.to_dict() for m in self.matches],
            "best_match": best.to_dict() if best else None,
            "valid_matches": [m.to_dict() for m in self.valid_matches(threshold)],
            "reasoning": self.reasoning,
            "from_cache": self.from_cache,
            "heuristic": self.heuristic,
        }


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SelectionError(Exception):
    pass


class ResponseFormatError(SelectionError):
    """The model's reply did not match the JSON response contract."""


class SelectionRetriesExhausted(SelectionError):
    """No attempt produced a usable candidate."""

    def __init__(self, errors: List[str], last_matches: Sequence[ToolMatch] = (), attempts: int = MAX_SELECTION_ATTEMPTS):
        super().__init__(
            f"Tool selection failed after {attempts} attempts: " + "; ".join(errors)
        )
        self.errors = list(errors)
        self.last_matches = tuple(last_matches)


# ---------------------------------------------------------------------------
# Prompting and parsing
# ---------------------------------------------------------------------------

class SelectionCandidate(BaseModel):
    tool_name: str
    confidence: float = Field(ge=0.0, le=1.0)
    parameters: Optional[Any] = None
    reasoning: str = ""


_CANDIDATES = TypeAdapter(List[SelectionCandidate])


def build_selection_prompt(tools: List[Tool]) -> str:
    lines = [
        "You choose which tools can fulfil the user's request.",
        "",
        "Available tools:",
    ]
    for tool in tools:
        lines.append(f"- {tool.name}: {tool.description}")
        lines.append(f"  input_schema: {json.dumps(tool.input_schema, sort_keys=True)}")
    lines.extend([
        "",
        "Respond with ONLY a JSON array, no prose and no code fences. Each element must be:",
        '{"tool_name": "<one of the tools above>", "confidence": <number 0..1>, '
        '"parameters": {<arguments matching input_schema>}, "reasoning": "<one sentence>"}',
        "Order elements from most to least suitable. Return [] if no tool fits.",
    ])
    return "\n".join(lines)


def build_feedback_message(errors: List[str]) -> str:
    bullet_list = "\n".join(f"- {e}" for e in errors)
    return (
        "Your previous answer could not be used:\n"
        f"{bullet_list}\n"
        "Answer again with ONLY the corrected JSON array."
    )


def build_repair_messages(tool: Tool, arguments: Any, errors: Sequence[str], query: str) -> List[Dict[str, str]]:
    system = (
        "You repair tool-call arguments so they satisfy a JSON Schema. "
        "Respond with ONLY the corrected JSON object."
    )
    user = (
        f"User request: {query}\n"
        f"Tool: {tool.name}\n"
        f"input_schema: {json.dumps(tool.input_schema, sort_keys=True)}\n"
        f"Invalid arguments: {json.dumps(arguments, default=str)}\n"
        "Validation errors:\n" + "\n".join(f"- {e}" for e in errors)
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def parse_selection_response(text: str) -> List[SelectionCandidate]:
    """Parse a reply strictly as the contracted JSON array; raise ResponseFormatError otherwise."""
    body = strip_code_fences(text)
    try:
        raw = json.loads(body)
    except json.JSONDecodeError as e:
        raise ResponseFormatError(f"Response is not valid JSON: {e.msg} at position {e.pos}") from e
    if not isinstance(raw, list):
        raise ResponseFormatError(f"Expected a JSON array, got {type(raw).__name__}")
    try:
        return _CANDIDATES.validate_python(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ResponseFormatError(f"Response does not match the contract: {problems}") from e


def _message_content(response: Dict[str, Any]) -> str:
    try:
        content = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise ResponseFormatError(f"Chat response has no message content: {e!r}") from e
    if not isinstance(content, str):
        raise ResponseFormatError("Chat response content is not text")
    return content


class ToolSelector:
    """Ranks tools for a query via the LLM and validates each candidate's arguments.

    Transport errors from ``chat_fn`` (HTTPException) propagate untouched, as
    does SchemaDefinitionError for a tool whose own schema is broken.
    """

    def __init__(
        self,
        chat_fn: ChatFn = call_openrouter,
        model: str = OPENROUTER_MODEL,
        cache: Optional[SelectionCache] = None,
        pipeline: Optional[ValidationPipeline] = None,
        max_prompt_tools: int = TOOL_SELECTION_MAX_PROMPT_TOOLS,
        max_attempts: int = MAX_SELECTION_ATTEMPTS,
        temperature: Optional[float] = SELECTION_TEMPERATURE,
        max_tokens: Optional[int] = SELECTION_MAX_TOKENS,
    ):
        self.chat_fn = chat_fn
        self.model = model
        self.cache = cache if cache is not None else SelectionCache()
        self.pipeline = pipeline if pipeline is not None else ValidationPipeline()
        self.max_prompt_tools = max_prompt_tools
        self.max_attempts = max_attempts
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def _chat(self, messages: List[Dict[str, str]]) -> str:
        response = await self.chat_fn(
            self.model, messages, temperature=self.temperature, max_tokens=self.max_tokens
        )
        return _message_content(response)

    async def select_tools(self, query: str, available_tools: Sequence[Tool]) -> RankedToolSelection:
        tools = list(available_tools)
        if not tools:
            logger.info("[TOOL SELECTION] No tools available; nothing to select")
            return RankedToolSelection(query=query, reasoning="No tools available")

        pipeline = self.pipeline.with_available_tools(tools)
        cacheable = self.cache.should_cache(query)
        if cacheable:
            cached = self._from_cache(query, tools, pipeline)
            if cached is not None:
                return cached

        prompt_tools = tools
        if len(tools) > self.max_prompt_tools:
            prompt_tools = [t for t, _ in best_tools_for_query(query, tools, self.max_prompt_tools)]
        system_prompt = build_selection_prompt(prompt_tools)

        feedback: List[str] = []
        last_text = ""
        format_failed = False
        last_matches: List[ToolMatch] = []
        for attempt in range(1, self.max_attempts + 1):
            messages = [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": query},
            ]
            if feedback:
                messages.append({"role": "user", "content": build_feedback_message(feedback)})
            logger.info(f"[TOOL SELECTION] Attempt {attempt}/{self.max_attempts} with {len(prompt_tools)} tools")

            try:
                last_text = await self._chat(messages)
                candidates = parse_selection_response(last_text)
            except ResponseFormatError as e:
                logger.warning(f"[TOOL SELECTION] Attempt {attempt}: {e}")
                format_failed = True
                feedback = [str(e)]
                continue
            format_failed = False

            if not candidates:
                logger.info("[TOOL SELECTION] Model selected no tools")
                return RankedToolSelection(query=query, reasoning="No suitable tool")

            last_matches, errors = await self._evaluate(query, candidates, tools, pipeline)
            selection = RankedToolSelection(
                query=query,
                matches=tuple(last_matches),
                reasoning=last_matches[0].reasoning if last_matches else "",
            )
            best = selection.best_valid_match()
            if best is not None:
                if cacheable:
                    self.cache.add(query, best.tool.name, best.confidence, best.suggested_parameters)
                logger.info(
                    f"[TOOL SELECTION] Selected {[m.tool.name for m in selection.matches]} "
                    f"(best valid: {best.tool.name} @ {best.confidence:.2f})"
                )
                return selection
            feedback = errors

        if format_failed:
            detected = detect_tool_suggestion(last_text, tools)
            if detected is not None:
                return self._heuristic_selection(query, detected, tools, pipeline)

        logger.error(f"[TOOL SELECTION] Giving up after {self.max_attempts} attempts: {feedback}")
        raise SelectionRetriesExhausted(feedback, last_matches, self.max_attempts)

    # -----------------------------------------------------------------------

    def _from_cache(self, query: str, tools: List[Tool], pipeline: ValidationPipeline) -> Optional[RankedToolSelection]:
        hit = self.cache.get(query)
        if hit is None:
            return None
        tool_name, confidence, arguments = hit
        tool = find_tool_by_name(tool_name, tools)
        if tool is None:
            logger.info(f"[CACHE HIT] Cached tool '{tool_name}' is no longer available; ignoring")
            self.cache.remove_tool_entries(tool_name)
            return None
        state = pipeline.validate_input(tool, arguments)
        if not state.is_valid:
            logger.info(f"[CACHE HIT] Cached arguments for '{tool_name}' no longer validate; ignoring")
            return None
        status = ParametersValid() if isinstance(state, Valid) else ParametersFixed(arguments, state.value)
        match = ToolMatch(tool, confidence, state.value, "Previously selected for this request", status)
        return RankedToolSelection(query=query, matches=(match,), reasoning=match.reasoning, from_cache=True)

    async def _evaluate(
        self,
        query: str,
        candidates: List[SelectionCandidate],
        tools: List[Tool],
        pipeline: ValidationPipeline,
    ) -> Tuple[List[ToolMatch], List[str]]:
        matches: List[ToolMatch] = []
        errors: List[str] = []
        for candidate in candidates:
            tool = find_tool_by_name(candidate.tool_name, tools)
            if tool is None:
                logger.warning(f"[TOOL SELECTION] Model referenced unknown tool '{candidate.tool_name}'")
                errors.append(f"Unknown tool '{candidate.tool_name}'; choose only from the listed tools")
                continue
            status, parameters = await self._validate_candidate(query, tool, candidate.parameters, pipeline)
            if isinstance(status, ParametersFailed):
                errors.append(f"Parameters for '{tool.name}' are invalid: {status.error}")
            matches.append(ToolMatch(tool, candidate.confidence, parameters, candidate.reasoning, status))
        return matches, errors

    async def _validate_candidate(
        self,
        query: str,
        tool: Tool,
        parameters: Any,
        pipeline: ValidationPipeline,
    ) -> Tuple[ValidationStatus, Any]:
        arguments = {} if parameters is None else parameters
        state = pipeline.validate_input(tool, arguments)
        if isinstance(state, Valid):
            return ParametersValid(), state.value
        if state.is_valid:
            logger.info(f"[VALIDATION] Fixed parameters for '{tool.name}': {type(state).__name__}")
            return ParametersFixed(arguments, state.value), state.value

        repaired = await self._repair(query, tool, arguments, state.errors)
        if repaired is not None:
            repaired_state = pipeline.validate_input(tool, repaired)
            if repaired_state.is_valid:
                logger.info(f"[VALIDATION] Repaired parameters for '{tool.name}' via LLM")
                return ParametersFixed(arguments, repaired_state.value), repaired_state.value
            errors = repaired_state.errors
        else:
            errors = state.errors
        return ParametersFailed("; ".join(errors)), arguments

    async def _repair(self, query: str, tool: Tool, arguments: Any, errors: Sequence[str]) -> Optional[Dict[str, Any]]:
        logger.info(f"[VALIDATION] Asking model to repair parameters for '{tool.name}'")
        try:
            text = await self._chat(build_repair_messages(tool, arguments, errors, query))
        except ResponseFormatError as e:
            logger.warning(f"[VALIDATION] Repair reply unusable for '{tool.name}': {e}")
            return None
        try:
            repaired = json.loads(strip_code_fences(text))
        except json.JSONDecodeError:
            logger.warning(f"[VALIDATION] Repair reply for '{tool.name}' is not JSON")
            return None
        if not isinstance(repaired, dict):
            logger.warning(f"[VALIDATION] Repair reply for '{tool.name}' is not a JSON object")
            return None
        return repaired

    def _heuristic_selection(
        self,
        query: str,
        detected: Tuple[str, Dict[str, Any]],
        tools: List[Tool],
        pipeline: ValidationPipeline,
    ) -> RankedToolSelection:
        tool_name, arguments = detected
        tool = find_tool_by_name(tool_name, tools)
        state = pipeline.validate_input(tool, arguments)
        if isinstance(state, Valid):
            status: ValidationStatus = ParametersValid()
        elif state.is_valid:
            status = ParametersFixed(arguments, state.value)
        else:
            status = ParametersFailed("; ".join(state.errors))
        parameters = state.value if state.is_valid else arguments
        logger.warning(f"[TOOL SELECTION] Falling back to text detection: '{tool_name}' ({type(status).__name__})")
        match = ToolMatch(tool, HEURISTIC_CONFIDENCE, parameters, "Detected from free-text model output", status)
        return RankedToolSelection(query=query, matches=(match,), reasoning=match.reasoning, heuristic=True)
