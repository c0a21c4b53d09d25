"""Tool definitions, tool discovery and execution-result formatting."""
import json
import logging
import os
from time import monotonic
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

if TYPE_CHECKING:
    from toolgate.tools.cache import SelectionCache

load_dotenv()

logger = logging.getLogger(__name__)

TOOLS_FILE = os.getenv("TOOLGATE_TOOLS_FILE", "tools.json")
TOOLS_REFRESH_SECONDS = float(os.getenv("TOOLGATE_TOOLS_REFRESH_SECONDS", "30"))

# Read-only tools a caller may run without asking the user first
AUTO_EXECUTE_TOOLS = frozenset(
    name.strip()
    for name in os.getenv(
        "TOOLGATE_AUTO_EXECUTE_TOOLS",
        "list_allowed_directories,list_directory,get_file_info,search_files,directory_tree,read_multiple_files",
    ).split(",")
    if name.strip()
)


class Tool(BaseModel):
    """An externally callable capability with a JSON-Schema input contract."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object"}, alias="inputSchema")


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageContent(BaseModel):
    type: Literal["image"] = "image"
    data: str
    mime_type: str = Field("application/octet-stream", alias="mimeType")

    model_config = ConfigDict(populate_by_name=True)


class ResourceContent(BaseModel):
    type: Literal["resource"] = "resource"
    uri: str
    text: Optional[str] = None
    blob: Optional[str] = None


class CallToolResult(BaseModel):
    """Result returned by the execution collaborator."""
    content: List[Union[TextContent, ImageContent, ResourceContent]] = Field(default_factory=list)
    is_error: bool = Field(False, alias="isError")

    model_config = ConfigDict(populate_by_name=True)


def format_tool_result(result: CallToolResult) -> str:
    """Render a tool result as human-readable text, one line per content item."""
    lines: List[str] = []
    for item in result.content:
        if isinstance(item, TextContent):
            lines.append(item.text)
        elif isinstance(item, ImageContent):
            preview = f"{item.data[:20]}..." if len(item.data) > 20 else item.data
            lines.append(f"[Image: {preview} ({item.mime_type})]")
        elif isinstance(item, ResourceContent):
            if item.text is not None:
                lines.append(item.text)
            else:
                lines.append(f"[Resource: {item.uri}]")
    output = "\n".join(lines)
    return output + "\n" if lines else output


def is_auto_executable(tool_name: str) -> bool:
    """Return True if the tool is read-only and may run without confirmation."""
    return tool_name in AUTO_EXECUTE_TOOLS


def find_tool_by_name(name: str, tools: List[Tool]) -> Optional[Tool]:
    for tool in tools:
        if tool.name == name:
            return tool
    return None


class ToolRegistry:
    """Loads the tool list from a JSON file and hands out read-only snapshots.

    The file holds either a list of tool objects or ``{"tools": [...]}`` (the
    shape of an MCP ``tools/list`` result). It is re-read at most once per
    refresh interval; tools that disappear or change their definition are
    purged from the selection cache, if one is attached.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        refresh_seconds: float = TOOLS_REFRESH_SECONDS,
        cache: Optional["SelectionCache"] = None,
    ):
        self.path = path or TOOLS_FILE
        self.refresh_seconds = refresh_seconds
        self.cache = cache
        self.last_fetch_time: Optional[float] = None
        self._tools: Dict[str, Tool] = {}

    def get_tools(self, force: bool = False) -> List[Tool]:
        now = monotonic()
        stale = self.last_fetch_time is None or (now - self.last_fetch_time) >= self.refresh_seconds
        if force or stale:
            self._refresh()
            self.last_fetch_time = now
        return list(self._tools.values())

    def set_tools(self, tools: List[Tool]) -> None:
        """Replace the snapshot directly (used when tools come from a live server)."""
        self._apply({tool.name: tool for tool in tools})
        self.last_fetch_time = monotonic()

    def _refresh(self) -> None:
        if not os.path.exists(self.path):
            logger.warning(f"[TOOL DISCOVERY] Tools file not found: {self.path}; no tools available")
            self._apply({})
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            # previous snapshot stays in place
            logger.error(f"[TOOL DISCOVERY] Failed to read {self.path}: {e}")
            return
        items = raw.get("tools", []) if isinstance(raw, dict) else raw
        loaded: Dict[str, Tool] = {}
        for item in items if isinstance(items, list) else []:
            try:
                tool = Tool.model_validate(item)
            except ValidationError as e:
                logger.warning(f"[TOOL DISCOVERY] Skipping malformed tool definition: {e}")
                continue
            if tool.name in loaded:
                logger.warning(f"[TOOL DISCOVERY] Duplicate tool name '{tool.name}', keeping the first definition")
                continue
            loaded[tool.name] = tool
        self._apply(loaded)

    def _apply(self, tools: Dict[str, Tool]) -> None:
        changed = [
            name for name, old in self._tools.items()
            if name not in tools or tools[name] != old
        ]
        if changed and self.cache is not None:
            for name in changed:
                self.cache.remove_tool_entries(name)
            logger.info(f"[TOOL DISCOVERY] Purged cached selections for removed/redefined tools: {changed}")
        self._tools = tools
        logger.info(f"[TOOL DISCOVERY] {len(tools)} tools available")
