# api/health.py

from fastapi import APIRouter

from toolgate.llm.router import selection_cache, tool_registry

health_router = APIRouter()

@health_router.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "message": "Toolgate API is running",
        "tools_available": len(tool_registry.get_tools()),
        "cache_entries": len(selection_cache),
    }
