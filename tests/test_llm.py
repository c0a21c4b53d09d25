"""Tests for LLM tool selection behavior.

These tests validate that the tool selector (selector.py) correctly:
- Uses cached selections before calling the model
- Validates, fixes and repairs the arguments the model proposes
- Retries with feedback on malformed replies, then falls back to text detection
- Is exposed correctly through the /llm API endpoints
"""
import json

import pytest
from unittest.mock import AsyncMock, patch
from fastapi import HTTPException
from fastapi.testclient import TestClient
from toolgate.main import app
from toolgate.llm import router as llm_router
from toolgate.llm.selector import (
    ParametersFailed,
    ParametersFixed,
    ParametersValid,
    RankedToolSelection,
    ResponseFormatError,
    SelectionRetriesExhausted,
    ToolMatch,
    ToolSelector,
    parse_selection_response,
)
from toolgate.llm.tools import Tool
from toolgate.tools.cache import SelectionCache
from toolgate.tools.pipeline import ValidationPipeline

client = TestClient(app)


READ_FILE = Tool(
    name="read_file",
    description="Read the contents of a file",
    input_schema={
        "type": "object",
        "properties": {"path": {"type": "string", "minLength": 1}},
        "required": ["path"],
    },
)
LIST_DIRECTORY = Tool(
    name="list_directory",
    description="List entries of a directory",
    input_schema={
        "type": "object",
        "properties": {"path": {"type": "string", "minLength": 1}},
        "required": ["path"],
    },
)
SEND_EMAIL = Tool(
    name="send_email",
    description="Send an email",
    input_schema={
        "type": "object",
        "properties": {"to": {"type": "string"}, "body": {"type": "string"}},
        "required": ["to", "body"],
    },
)
TOOLS = [READ_FILE, LIST_DIRECTORY, SEND_EMAIL]


def reply(content):
    """Build an OpenAI-shaped chat completion body."""
    if not isinstance(content, str):
        content = json.dumps(content)
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def candidate(tool_name, confidence=0.9, parameters=None, reasoning="fits"):
    return {"tool_name": tool_name, "confidence": confidence, "parameters": parameters, "reasoning": reasoning}


def make_selector(chat_fn, pipeline=None, **kwargs):
    return ToolSelector(
        chat_fn=chat_fn,
        model="test-model",
        cache=SelectionCache(),
        pipeline=pipeline or ValidationPipeline(),
        **kwargs,
    )


class TestResponseParsing:
    """Strict parsing of the JSON response contract."""

    def test_parses_array_in_code_fence(self):
        """Test parsing a JSON array wrapped in a code fence."""
        text = '```json\n[{"tool_name": "read_file", "confidence": 0.7, "parameters": {"path": "a"}}]\n```'
        parsed = parse_selection_response(text)
        assert parsed[0].tool_name == "read_file"
        assert parsed[0].reasoning == ""

    def test_rejects_non_array_and_bad_fields(self):
        """Test that non-array and malformed replies are format errors."""
        bad_replies = [
            "I think read_file",
            '{"tool_name": "read_file", "confidence": 0.5}',
            '[{"tool_name": "read_file", "confidence": 1.5}]',
            '[{"confidence": 0.5}]',
        ]
        for text in bad_replies:
            with pytest.raises(ResponseFormatError):
                parse_selection_response(text)


class TestRankedToolSelection:
    """Derived views over a selection."""

    def _match(self, tool, confidence, status):
        return ToolMatch(tool, confidence, {}, "", status)

    def test_best_match_ties_keep_first(self):
        """Test that equal confidences keep the model's order."""
        selection = RankedToolSelection(
            query="q",
            matches=(
                self._match(READ_FILE, 0.8, ParametersValid()),
                self._match(LIST_DIRECTORY, 0.8, ParametersValid()),
                self._match(SEND_EMAIL, 0.3, ParametersValid()),
            ),
        )
        assert selection.best_match().tool is READ_FILE

    def test_valid_matches_keep_original_order(self):
        """Test filtering matches by threshold and validity."""
        selection = RankedToolSelection(
            query="q",
            matches=(
                self._match(SEND_EMAIL, 0.6, ParametersValid()),
                self._match(READ_FILE, 0.9, ParametersFailed("bad")),
                self._match(LIST_DIRECTORY, 0.7, ParametersFixed({}, {"path": "."})),
                self._match(READ_FILE, 0.2, ParametersValid()),
            ),
        )
        assert [m.tool.name for m in selection.valid_matches(0.5)] == ["send_email", "list_directory"]
        assert [m.tool.name for m in selection.matches_above(0.65)] == ["read_file", "list_directory"]
        assert selection.best_match().tool is READ_FILE
        assert selection.best_valid_match().tool is LIST_DIRECTORY
        assert RankedToolSelection(query="q").best_match() is None


class TestToolSelector:
    """Selection flow against a mocked chat collaborator."""

    @pytest.mark.asyncio
    async def test_valid_selection_is_returned_and_cached(self):
        """Test the happy path and its cache entry."""
        chat = AsyncMock(return_value=reply([candidate("read_file", 0.9, {"path": "notes.txt"})]))
        selector = make_selector(chat)

        selection = await selector.select_tools("read notes.txt", TOOLS)
        best = selection.best_match()
        print(f"\n  🔍 selection → {selection.to_dict()}")
        assert best.tool.name == "read_file"
        assert best.suggested_parameters == {"path": "notes.txt"}
        assert isinstance(best.validation_status, ParametersValid)
        assert selection.from_cache is False
        assert chat.await_count == 1
        assert selector.cache.get("read notes.txt") == ("read_file", 0.9, {"path": "notes.txt"})

        model, messages = chat.await_args.args[:2]
        assert model == "test-model"
        assert messages[0]["role"] == "system"
        assert "read_file" in messages[0]["content"]
        assert messages[1] == {"role": "user", "content": "read notes.txt"}

    @pytest.mark.asyncio
    async def test_cache_hit_skips_the_model(self):
        """Test that a cached query makes no model call."""
        chat = AsyncMock(return_value=reply([candidate("read_file", 0.9, {"path": "notes.txt"})]))
        selector = make_selector(chat)

        await selector.select_tools("read notes.txt", TOOLS)
        selection = await selector.select_tools("  READ   notes.txt ", TOOLS)
        assert selection.from_cache is True
        assert selection.best_match().tool.name == "read_file"
        assert chat.await_count == 1

    @pytest.mark.asyncio
    async def test_time_relative_query_is_not_cached(self):
        """Test that time-relative queries bypass the cache."""
        chat = AsyncMock(return_value=reply([candidate("read_file", 0.9, {"path": "log.txt"})]))
        selector = make_selector(chat)

        await selector.select_tools("read today's log", TOOLS)
        await selector.select_tools("read today's log", TOOLS)
        assert chat.await_count == 2
        assert len(selector.cache) == 0

    @pytest.mark.asyncio
    async def test_cached_tool_that_disappeared_is_ignored(self):
        """Test that a cache hit for a removed tool is purged."""
        chat = AsyncMock(return_value=reply([candidate("list_directory", 0.8, {"path": "src"})]))
        selector = make_selector(chat)
        selector.cache.add("list src", "ghost_tool", 0.9, {})

        selection = await selector.select_tools("list src", TOOLS)
        assert selection.from_cache is False
        assert selection.best_match().tool.name == "list_directory"
        assert chat.await_count == 1

    @pytest.mark.asyncio
    async def test_no_tools_means_no_model_call(self):
        """Test that an empty tool list short-circuits."""
        chat = AsyncMock()
        selection = await make_selector(chat).select_tools("read notes.txt", [])
        assert selection.matches == ()
        chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_array_is_an_answer(self):
        """Test that an empty array means no tool applies."""
        chat = AsyncMock(return_value=reply([]))
        selection = await make_selector(chat).select_tools("tell me a joke", TOOLS)
        assert selection.matches == ()
        assert chat.await_count == 1

    @pytest.mark.asyncio
    async def test_prefilled_parameters_are_marked_fixed(self):
        """Test that pipeline changes mark parameters as fixed."""
        chat = AsyncMock(return_value=reply([candidate("list_directory", 0.8, {})]))
        selection = await make_selector(chat).select_tools("list the folder", TOOLS)
        best = selection.best_match()
        assert isinstance(best.validation_status, ParametersFixed)
        assert best.suggested_parameters == {"path": "."}
        assert best.validation_status.original == {}

    @pytest.mark.asyncio
    async def test_malformed_reply_is_retried_with_feedback(self):
        """Test the retry prompt after a malformed reply."""
        chat = AsyncMock(side_effect=[
            reply("Sure! Let me think about that."),
            reply([candidate("read_file", 0.7, {"path": "a.txt"})]),
        ])
        selection = await make_selector(chat).select_tools("open a.txt", TOOLS)
        assert selection.best_match().tool.name == "read_file"
        assert chat.await_count == 2

        retry_messages = chat.await_args_list[1].args[1]
        assert "could not be used" in retry_messages[-1]["content"]
        assert "not valid JSON" in retry_messages[-1]["content"]

    @pytest.mark.asyncio
    async def test_unknown_tool_is_fed_back(self):
        """Test that unknown tool names are reported back to the model."""
        chat = AsyncMock(side_effect=[
            reply([candidate("delete_everything", 0.9, {})]),
            reply([candidate("read_file", 0.6, {"path": "a.txt"})]),
        ])
        selection = await make_selector(chat).select_tools("open a.txt", TOOLS)
        assert [m.tool.name for m in selection.matches] == ["read_file"]
        feedback = chat.await_args_list[1].args[1][-1]["content"]
        assert "Unknown tool 'delete_everything'" in feedback

    @pytest.mark.asyncio
    async def test_invalid_parameters_are_repaired(self):
        """Test the single repair round-trip for bad parameters."""
        chat = AsyncMock(side_effect=[
            reply([candidate("read_file", 0.9, {"path": 5})]),
            reply({"path": "a.txt"}),
        ])
        selector = make_selector(chat, pipeline=ValidationPipeline(auto_fix=False))
        selection = await selector.select_tools("open a.txt", TOOLS)

        best = selection.best_match()
        assert isinstance(best.validation_status, ParametersFixed)
        assert best.validation_status.original == {"path": 5}
        assert best.suggested_parameters == {"path": "a.txt"}
        assert chat.await_count == 2

        repair_messages = chat.await_args_list[1].args[1]
        assert "repair" in repair_messages[0]["content"]
        assert "read_file" in repair_messages[1]["content"]

    @pytest.mark.asyncio
    async def test_failed_repair_exhausts_attempts(self):
        """Test that unrepairable parameters end in retries exhausted."""
        chat = AsyncMock(side_effect=[
            reply([candidate("read_file", 0.9, {"path": 5})]),
            reply("no idea"),
            reply([candidate("read_file", 0.9, {"path": 6})]),
            reply("[1, 2]"),
        ])
        selector = make_selector(chat, pipeline=ValidationPipeline(auto_fix=False))
        with pytest.raises(SelectionRetriesExhausted) as exc:
            await selector.select_tools("open a.txt", TOOLS)

        assert chat.await_count == 4
        assert isinstance(exc.value.last_matches[0].validation_status, ParametersFailed)
        assert any("read_file" in e for e in exc.value.errors)
        assert len(selector.cache) == 0

    @pytest.mark.asyncio
    async def test_text_detection_fallback(self):
        """Test the free-text tool detection after format failures."""
        prose = reply('I need to use the read_file tool with {"path": "a.txt"}')
        chat = AsyncMock(side_effect=[prose, prose])
        selector = make_selector(chat)
        selection = await selector.select_tools("open a.txt", TOOLS)

        best = selection.best_match()
        assert selection.heuristic is True
        assert best.tool.name == "read_file"
        assert best.confidence == 0.5
        assert best.suggested_parameters == {"path": "a.txt"}
        assert len(selector.cache) == 0

    @pytest.mark.asyncio
    async def test_unparseable_replies_without_tool_mention_raise(self):
        """Test that unusable replies with no tool mention raise."""
        chat = AsyncMock(return_value=reply("I cannot help with that."))
        with pytest.raises(SelectionRetriesExhausted):
            await make_selector(chat).select_tools("open a.txt", TOOLS)
        assert chat.await_count == 2

    @pytest.mark.asyncio
    async def test_missing_choices_is_a_format_error(self):
        """Test that a reply without message content is retried."""
        chat = AsyncMock(side_effect=[
            {"choices": [{"message": {"content": None}}]},
            reply([candidate("read_file", 0.9, {"path": "a.txt"})]),
        ])
        selection = await make_selector(chat).select_tools("open a.txt", TOOLS)
        assert selection.best_match().tool.name == "read_file"

    @pytest.mark.asyncio
    async def test_transport_errors_propagate(self):
        """Test that HTTP errors from the client are not swallowed."""
        chat = AsyncMock(side_effect=HTTPException(status_code=429, detail="Rate limited"))
        with pytest.raises(HTTPException) as exc:
            await make_selector(chat).select_tools("open a.txt", TOOLS)
        assert exc.value.status_code == 429
        assert chat.await_count == 1

    @pytest.mark.asyncio
    async def test_prompt_is_trimmed_to_most_relevant_tools(self):
        """Test lexical pre-ranking when there are too many tools."""
        extra = [Tool(name=f"unrelated_{i}", description="Does something else") for i in range(5)]
        chat = AsyncMock(return_value=reply([]))
        selector = make_selector(chat, max_prompt_tools=2)
        await selector.select_tools("read the file notes.txt", extra + TOOLS)

        system_prompt = chat.await_args.args[1][0]["content"]
        listed = [line[2:].split(":")[0] for line in system_prompt.splitlines() if line.startswith("- ")]
        print(f"\n  📊 tools in prompt → {listed}")
        assert len(listed) == 2
        assert "read_file" in listed


class TestLLMAPIEndpoints:
    """Test /llm API endpoint behavior."""

    def setup_method(self):
        llm_router.selection_cache.clear()

    def test_health_check(self):
        """Test the health endpoint."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_log_endpoint(self):
        """Test the client error log endpoint."""
        response = client.post(
            "/log",
            json={
                "error": "Test error",
                "timestamp": "2024-01-01T00:00:00Z",
                "userAgent": "test-agent",
                "url": "http://test.com"
            }
        )
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_select_empty_message(self):
        """Test that an empty message is rejected."""
        response = client.post("/llm/select", json={"message": "   "})
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert "valid request" in response.json()["message"].lower()

    def test_select_returns_best_match(self):
        """Test the select endpoint payload for a confident match."""
        chat = AsyncMock(return_value=reply([candidate("list_directory", 0.85, {"path": "src"})]))
        with patch.object(llm_router.tool_registry, "get_tools", return_value=TOOLS), \
                patch.object(llm_router.tool_selector, "chat_fn", chat):
            response = client.post("/llm/select", json={"message": "list src"})

        body = response.json()
        print(f"\n  🔍 /llm/select → {body}")
        assert body["success"] is True
        assert body["data"]["best_match"]["tool_name"] == "list_directory"
        assert body["data"]["valid_matches"][0]["parameters"] == {"path": "src"}
        assert body["data"]["auto_execute"] is True
        assert body["data"]["from_cache"] is False

    def test_select_below_threshold(self):
        """Test that low-confidence matches are not returned as best."""
        chat = AsyncMock(return_value=reply([candidate("send_email", 0.2, {"to": "a@b.c", "body": "hi"})]))
        with patch.object(llm_router.tool_registry, "get_tools", return_value=TOOLS), \
                patch.object(llm_router.tool_selector, "chat_fn", chat):
            response = client.post("/llm/select", json={"message": "email bob", "threshold": 0.5})

        body = response.json()
        assert body["success"] is True
        assert body["data"]["valid_matches"] == []
        assert body["data"]["auto_execute"] is False

    def test_select_exhausted(self):
        """Test the select endpoint when every attempt failed."""
        chat = AsyncMock(return_value=reply("no json here"))
        with patch.object(llm_router.tool_registry, "get_tools", return_value=TOOLS), \
                patch.object(llm_router.tool_selector, "chat_fn", chat):
            response = client.post("/llm/select", json={"message": "do the thing"})

        body = response.json()
        assert body["success"] is False
        assert body["error"]

    def test_select_rate_limited(self):
        """Test that a provider 429 reaches the caller."""
        chat = AsyncMock(side_effect=HTTPException(status_code=429, detail="Rate limited", headers={"Retry-After": "30"}))
        with patch.object(llm_router.tool_registry, "get_tools", return_value=TOOLS), \
                patch.object(llm_router.tool_selector, "chat_fn", chat):
            response = client.post("/llm/select", json={"message": "read a.txt"})
        assert response.status_code == 429
        assert response.headers["retry-after"] == "30"

    def test_validate_endpoint(self):
        """Test validating arguments over HTTP."""
        with patch.object(llm_router.tool_registry, "get_tools", return_value=TOOLS):
            ok = client.post("/llm/validate", json={"tool_name": "send_email", "arguments": {"to": " a@b.c ", "body": "hi"}})
            unknown = client.post("/llm/validate", json={"tool_name": "nope", "arguments": {}})

        assert ok.json()["success"] is True
        assert ok.json()["data"]["state"] == "sanitized"
        assert ok.json()["data"]["value"]["to"] == "a@b.c"
        assert unknown.json()["success"] is False

    def test_tools_endpoint(self):
        """Test listing the current tools."""
        with patch.object(llm_router.tool_registry, "get_tools", return_value=TOOLS):
            response = client.get("/llm/tools")
        tools = response.json()["tools"]
        assert [t["name"] for t in tools] == ["read_file", "list_directory", "send_email"]
        assert tools[1]["auto_execute"] is True

    def test_models_endpoint(self):
        """Test listing provider models."""
        with patch.object(llm_router.default_client, "list_models", AsyncMock(return_value=[{"id": "m"}])):
            response = client.get("/llm/models")
        assert response.json() == {"success": True, "models": [{"id": "m"}]}

    def test_cache_admin_endpoints(self):
        """Test the cache stats and clear endpoints."""
        llm_router.selection_cache.add("list src", "list_directory", 0.9, {"path": "src"})
        stats = client.get("/llm/cache-stats").json()["stats"]
        assert stats["entries"] == 1

        response = client.post("/llm/clear-cache")
        assert response.json()["cleared"]["selection_cache_entries"] == 1
        response = client.get("/llm/clear-cache")
        assert response.json()["cleared"]["selection_cache_entries"] == 0
