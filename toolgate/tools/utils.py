"""Utility functions for query normalization, tool scoring, and tool-mention detection."""
import json
import re
import logging
from difflib import SequenceMatcher
from typing import List, Tuple, Optional, Dict, Any, Callable

from toolgate.llm.tools import Tool

logger = logging.getLogger(__name__)

# Greetings, acknowledgements and farewells that never need a tool
CONVERSATIONAL_PHRASES = [
    "hello", "hi", "hey", "howdy", "greetings", "good morning",
    "good afternoon", "good evening", "good night", "what's up",
    "whats up", "sup", "yo", "hiya",
    "thanks", "thank you", "thx", "ty", "cool", "nice", "great",
    "awesome", "perfect", "ok", "okay", "sure", "yep", "yeah",
    "alright", "sounds good", "got it", "understood", "no problem",
    "np", "you're welcome", "yw", "bye", "goodbye", "see you",
    "see ya", "later", "cya", "there", "so much", "a lot",
]

# Answers to these change over time, so a cached selection would go stale
TIME_RELATIVE_WORDS = ["today", "yesterday", "tomorrow", "now", "current", "latest", "random"]

_CONVERSATIONAL_RE = re.compile(
    r"^(?:(?:" + "|".join(re.escape(p) for p in sorted(CONVERSATIONAL_PHRASES, key=len, reverse=True)) + r")\b\s*)+$"
)
_TIME_RELATIVE_RE = re.compile(r"\b(?:" + "|".join(TIME_RELATIVE_WORDS) + r")\b")
_PUNCTUATION_RE = re.compile(r"[^\w\s']")

_FENCE_RE = re.compile(r"```(?:[\w+-]*)?\n([\s\S]*?)```")

_EXPLICIT_TOOL_RE = re.compile(r"I need to use the\s+[`'\"]?(?P<tool_name>[A-Za-z0-9_\-]+)[`'\"]?\s+tool", re.IGNORECASE)
_TOOL_MENTION_RE = re.compile(r"[`'\"]?([A-Za-z0-9_\-]+)[`'\"]?\s+tool\b", re.IGNORECASE)

_STOPWORDS = {
    "the", "a", "an", "and", "or", "of", "to", "in", "on", "for", "with", "me",
    "my", "is", "are", "be", "it", "this", "that", "please", "can", "you", "i",
}


def normalize_query(query: str) -> str:
    """Lower-case, trim and collapse internal whitespace."""
    return " ".join((query or "").lower().split())


def is_conversational(query: str) -> bool:
    text = _PUNCTUATION_RE.sub(" ", normalize_query(query))
    text = " ".join(text.split())
    return bool(text) and _CONVERSATIONAL_RE.match(text) is not None


def is_cacheable_query(query: str) -> bool:
    """Deterministic predicate deciding whether a query's selection may be cached.

    Not cacheable: empty queries, purely conversational ones ("thanks!",
    "hi there") and anything mentioning a time-relative word as a whole word.
    """
    normalized = normalize_query(query)
    if not normalized:
        return False
    if is_conversational(normalized):
        return False
    if _TIME_RELATIVE_RE.search(normalized):
        return False
    return True


def _tokens(text: str) -> List[str]:
    return [t for t in re.findall(r"[a-z0-9]+", text.lower()) if t not in _STOPWORDS]


def _same_word(a: str, b: str) -> bool:
    if a == b:
        return True
    # plural/singular
    return len(a) > 3 and len(b) > 3 and a.rstrip("s") == b.rstrip("s")


def score_tool(query: str, tool: Tool) -> float:
    """Return a float score in [0,200]: 0 best match, 200 worst."""
    score, _ = score_tool_with_details(query, tool)
    return score


def score_tool_with_details(query: str, tool: Tool) -> Tuple[float, Dict[str, Any]]:
    """Lexical relevance of a tool to a query, with a breakdown for logging.

    difflib ratio against the tool name is the base; query words found in the
    name lower the score a lot, words found in the description a little.
    """
    q = normalize_query(query)
    name = tool.name.lower()
    name_text = re.sub(r"[_\-]+", " ", name)

    ratio = SequenceMatcher(None, q, name_text).ratio()  # 0..1
    base = (1.0 - ratio) * 150.0  # 0..150
    score = base

    qtokens = _tokens(q)
    name_tokens = _tokens(name_text)
    desc_tokens = _tokens(tool.description or "")

    name_hits: List[str] = []
    desc_hits: List[str] = []
    for token in dict.fromkeys(qtokens):
        if any(_same_word(token, nt) for nt in name_tokens):
            score -= 35.0
            name_hits.append(token)
        elif len(token) > 2 and any(_same_word(token, dt) for dt in desc_tokens):
            score -= 8.0
            desc_hits.append(token)

    # Tool named verbatim in the query
    exact = name in q or (len(name_tokens) > 1 and name_text in q)
    if exact:
        score -= 40.0

    disjoint = not name_hits and not desc_hits and not exact
    if disjoint:
        score += 20.0

    # Clamp
    score = 0.0 if score < 0.0 else (200.0 if score > 200.0 else score)

    details = {
        "tool": tool.name,
        "ratio": round(ratio, 4),
        "base": round(base, 2),
        "name_hits": name_hits,
        "description_hits": desc_hits,
        "exact": exact,
        "disjoint": disjoint,
        "final": round(float(score), 2),
    }
    return float(score), details


def best_tools_for_query(
    query: str,
    tools: List[Tool],
    max_tools: int = 20,
    filter_pred: Optional[Callable[[Tool], bool]] = None,
) -> List[Tuple[Tool, float]]:
    """Rank tools by lexical relevance and keep the best ``max_tools``.

    Ties keep the order the tools were given in.
    """
    pool = [t for t in tools if filter_pred(t)] if filter_pred else list(tools)
    scored = [(tool, score_tool(query, tool)) for tool in pool]
    scored.sort(key=lambda x: x[1])
    top = scored[:max_tools]
    logger.info(
        f"[TOOL RANKING] Kept {len(top)}/{len(pool)} tools for prompt: "
        f"{[(t.name, round(s, 1)) for t, s in top[:5]]}{'...' if len(top) > 5 else ''}"
    )
    return top


def strip_code_fences(text: str) -> str:
    """Return the contents of the first fenced block if present, else the text itself."""
    matches = _FENCE_RE.findall(text or "")
    if matches:
        return matches[0].strip()
    return (text or "").replace("```", "").strip()


def _json_objects(text: str) -> List[Tuple[int, Dict[str, Any]]]:
    """Every JSON object embedded in free text, with its start offset."""
    decoder = json.JSONDecoder()
    found: List[Tuple[int, Dict[str, Any]]] = []
    pos = text.find("{")
    while pos != -1:
        try:
            obj, end = decoder.raw_decode(text, pos)
        except json.JSONDecodeError:
            pos = text.find("{", pos + 1)
            continue
        if isinstance(obj, dict):
            found.append((pos, obj))
        pos = text.find("{", end)
    return found


def detect_tool_suggestion(text: str, available_tools: List[Tool]) -> Optional[Tuple[str, Dict[str, Any]]]:
    """Best-effort (tool_name, arguments) from free-text model output.

    Looks for "I need to use the X tool" first, then any "X tool" mention
    where X is an available tool. Arguments are the first JSON object after
    the mention, else the first one anywhere, else ``{}``. Returns None when
    no available tool is mentioned.
    """
    if not text or not available_tools:
        return None
    names = {t.name for t in available_tools}

    tool_name: Optional[str] = None
    mention_at = 0
    m = _EXPLICIT_TOOL_RE.search(text)
    if m and m.group("tool_name") in names:
        tool_name, mention_at = m.group("tool_name"), m.end()
    else:
        for m in _TOOL_MENTION_RE.finditer(text):
            if m.group(1) in names:
                tool_name, mention_at = m.group(1), m.end()
                break
    if tool_name is None:
        return None

    objects = _json_objects(text)
    after = [obj for pos, obj in objects if pos >= mention_at]
    if after:
        arguments = after[0]
    elif objects:
        arguments = objects[0][1]
    else:
        arguments = {}
    logger.info(f"[TOOL DETECTION] Detected mention of '{tool_name}' with {len(arguments)} argument(s)")
    return tool_name, arguments
