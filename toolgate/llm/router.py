"""Router for tool selection and argument validation endpoints."""
import logging
import os
from typing import Dict, Any, Optional
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from dotenv import load_dotenv

from toolgate.llm.agent import default_client
from toolgate.llm.selector import SelectionRetriesExhausted, ToolSelector
from toolgate.llm.tools import ToolRegistry, find_tool_by_name, is_auto_executable
from toolgate.tools.cache import SelectionCache
from toolgate.tools.pipeline import ValidationPipeline
from toolgate.tools.schema import SchemaDefinitionError

load_dotenv()

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/llm", tags=["llm"])

TOOL_CONFIDENCE_THRESHOLD = float(os.getenv("TOOL_CONFIDENCE_THRESHOLD", "0.5"))

# Selection cache (to reduce OpenRouter calls)
selection_cache = SelectionCache()
tool_registry = ToolRegistry(cache=selection_cache)
validation_pipeline = ValidationPipeline()
tool_selector = ToolSelector(cache=selection_cache, pipeline=validation_pipeline)


@router.post("/clear-cache", tags=["admin"])
@router.get("/clear-cache", tags=["admin"])
async def clear_cache():
    """Clear the tool selection cache.

    Can be called via:
    - GET: curl http://localhost:8000/llm/clear-cache
    - POST: curl -X POST http://localhost:8000/llm/clear-cache
    """
    count = selection_cache.clear()
    logger.info(f"[CACHE CLEAR] Cleared {count} selection cache entries")
    return {
        "success": True,
        "message": "Cache cleared successfully",
        "cleared": {"selection_cache_entries": count},
    }


@router.get("/cache-stats", tags=["admin"])
async def cache_stats():
    return {"success": True, "stats": selection_cache.stats()}


class SelectRequest(BaseModel):
    message: str
    threshold: Optional[float] = None


class ValidateRequest(BaseModel):
    tool_name: str
    arguments: Any = None


class QueryResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@router.get("/tools")
async def list_tools():
    tools = tool_registry.get_tools()
    return {
        "success": True,
        "tools": [
            {**tool.model_dump(by_alias=False), "auto_execute": is_auto_executable(tool.name)}
            for tool in tools
        ],
    }


@router.get("/models")
async def list_models():
    models = await default_client.list_models()
    return {"success": True, "models": models}


@router.post("/validate", response_model=QueryResponse)
async def validate_arguments(request: ValidateRequest):
    """Run the validation pipeline on arguments for one tool."""
    tools = tool_registry.get_tools()
    tool = find_tool_by_name(request.tool_name, tools)
    if tool is None:
        return QueryResponse(
            success=False,
            message=f"Unknown tool '{request.tool_name}'.",
            error="Unknown tool",
        )
    try:
        state = validation_pipeline.with_available_tools(tools).validate_input(tool, request.arguments)
    except SchemaDefinitionError as e:
        logger.error(f"[VALIDATION] {e}")
        return QueryResponse(success=False, message="The tool's input schema is invalid.", error=str(e))

    logger.info(f"[API RESPONSE] Validation of '{tool.name}' -> {state.to_dict()['state']}")
    return QueryResponse(
        success=state.is_valid,
        message="Arguments are usable." if state.is_valid else "Arguments could not be repaired.",
        data=state.to_dict(),
    )


@router.post("/select", response_model=QueryResponse)
async def select_tools(request: SelectRequest):
    """Pick tools for a user request and return validated arguments."""
    try:
        message = request.message.strip()

        if not message:
            return QueryResponse(
                success=False,
                message="Please provide a valid request.",
                error="Empty message"
            )

        threshold = TOOL_CONFIDENCE_THRESHOLD if request.threshold is None else request.threshold
        tools = tool_registry.get_tools()
        selection = await tool_selector.select_tools(message, tools)

        data_payload = selection.to_dict(threshold)
        best = selection.best_valid_match(threshold)
        data_payload["auto_execute"] = bool(best) and is_auto_executable(best.tool.name)
        data_payload["threshold"] = threshold

        if best is None:
            logger.info(f"[API RESPONSE] No valid tool above {threshold} for '{message[:100]}'")
            return QueryResponse(
                success=True,
                message="No tool matched this request.",
                data=data_payload,
            )

        logger.info(
            f"[API RESPONSE] Returning {best.tool.name} (confidence={best.confidence:.2f}, "
            f"cached={selection.from_cache}, heuristic={selection.heuristic})"
        )
        return QueryResponse(
            success=True,
            message=f"Selected tool '{best.tool.name}'.",
            data=data_payload,
        )
    except HTTPException:
        # Re-raise HTTP exceptions (e.g., rate limits)
        raise
    except SelectionRetriesExhausted as e:
        logger.error(f"[SELECTION ERROR] {e}")
        return QueryResponse(
            success=False,
            message="Sorry, I couldn't find a usable tool for that request.",
            data={"errors": e.errors, "matches": [m.to_dict() for m in e.last_matches]},
            error=str(e),
        )
    except Exception as e:
        logger.error(f"[ROUTER ERROR] Unexpected error in select handler: {e}", exc_info=True)
        logger.error(f"[ROUTER ERROR] Request was: '{request.message[:200]}'")
        logger.error(f"[ROUTER ERROR] Exception type: {type(e).__name__}")
        return QueryResponse(
            success=False,
            message="Sorry, an unexpected error occurred.",
            error=str(e)
        )
