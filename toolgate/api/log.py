# api/log.py

from typing import Optional

from fastapi import APIRouter
import logging
from pydantic import BaseModel

log_router = APIRouter()
logger = logging.getLogger(__name__)

class LogRequest(BaseModel):
    error: str
    timestamp: str
    userAgent: str
    url: str
    toolName: Optional[str] = None

@log_router.post("/log")
async def log_error(request: LogRequest):
    tool_note = f" (tool: {request.toolName})" if request.toolName else ""
    logger.error(f"[CLIENT ERROR] {request.timestamp}{tool_note}: {request.error}")
    logger.error(f"[CLIENT ERROR] User Agent: {request.userAgent} URL: {request.url}")
    return {"success": True, "message": "Error logged successfully"}
