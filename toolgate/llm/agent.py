"""OpenRouter API client used as the LLM chat collaborator."""
import asyncio
import httpx
import logging
import os
from time import monotonic
from typing import Any, Dict, List, Optional
from fastapi import HTTPException
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# OpenRouter configuration
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "openai/gpt-4o-mini")
OPENROUTER_MAX_RETRIES = int(os.getenv("OPENROUTER_MAX_RETRIES", "2"))
OPENROUTER_RETRY_BACKOFF = float(os.getenv("OPENROUTER_RETRY_BACKOFF", "1.0"))
OPENROUTER_TIMEOUT = float(os.getenv("OPENROUTER_TIMEOUT", "120"))
OPENROUTER_MIN_REQUEST_INTERVAL = float(os.getenv("OPENROUTER_MIN_REQUEST_INTERVAL", "1.0"))
OPENROUTER_REFERER = os.getenv("OPENROUTER_REFERER", "https://github.com/toolgate/toolgate")
OPENROUTER_TITLE = os.getenv("OPENROUTER_TITLE", "toolgate")


class OpenRouterClient:
    """Thin async wrapper over the OpenRouter REST API.

    Requests are spaced at least ``min_request_interval`` seconds apart.
    429 is surfaced immediately as HTTPException(429) carrying Retry-After;
    5xx responses and network errors are retried with exponential backoff.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = OPENROUTER_BASE_URL,
        timeout: float = OPENROUTER_TIMEOUT,
        max_retries: int = OPENROUTER_MAX_RETRIES,
        retry_backoff: float = OPENROUTER_RETRY_BACKOFF,
        min_request_interval: float = OPENROUTER_MIN_REQUEST_INTERVAL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else OPENROUTER_API_KEY
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.min_request_interval = min_request_interval
        self._transport = transport
        self._last_request_time: Optional[float] = None
        self._throttle_lock = asyncio.Lock()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": OPENROUTER_REFERER,
            "X-Title": OPENROUTER_TITLE,
        }

    async def _throttle(self) -> None:
        async with self._throttle_lock:
            if self._last_request_time is not None:
                wait = self.min_request_interval - (monotonic() - self._last_request_time)
                if wait > 0:
                    logger.debug(f"[OPENROUTER] Throttling request for {wait:.2f}s")
                    await asyncio.sleep(wait)
            self._last_request_time = monotonic()

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """POST /chat/completions and return the provider's response body."""
        payload: Dict[str, Any] = {"model": model, "messages": messages}
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        prompt_len = sum(len(m.get("content") or "") for m in messages)
        logger.info(f"[OPENROUTER] chat model={model} messages={len(messages)} prompt_len={prompt_len}")
        data = await self._request("POST", "/chat/completions", model=model, json=payload)
        if not data.get("choices"):
            raise HTTPException(status_code=502, detail="No choices returned by AI service")
        return data

    async def list_models(self) -> List[Dict[str, Any]]:
        """GET /models and return the model list."""
        data = await self._request("GET", "/models")
        models = data.get("data", [])
        logger.info(f"[OPENROUTER] {len(models)} models available")
        return models

    async def _request(self, method: str, path: str, model: Optional[str] = None, **kwargs: Any) -> Dict[str, Any]:
        if not self.api_key:
            raise HTTPException(status_code=500, detail="OpenRouter API key not configured")

        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            attempt = 0
            while True:
                try:
                    await self._throttle()
                    response = await client.request(method, url, headers=self._headers(), **kwargs)
                    logger.info(f"[OPENROUTER] {method} {path} -> {response.status_code} (attempt={attempt})")
                    if response.status_code == 429:
                        retry_after = response.headers.get("Retry-After", "60")
                        logger.warning(f"[OPENROUTER] Rate limited. Retry-After: {retry_after}")
                        raise HTTPException(status_code=429, detail="Rate limited by AI service", headers={"Retry-After": retry_after})

                    if response.status_code == 404:
                        raise HTTPException(status_code=404, detail=f"OpenRouter model not found or unavailable: {model or path}")

                    # Retry on transient 5xx
                    if 500 <= response.status_code < 600 and attempt < self.max_retries:
                        backoff = self.retry_backoff * (2 ** attempt)
                        logger.warning(f"[OPENROUTER] 5xx {response.status_code}, retrying in {backoff:.1f}s")
                        await asyncio.sleep(backoff)
                        attempt += 1
                        continue

                    response.raise_for_status()
                    return response.json()
                except HTTPException:
                    raise
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    body_preview = (e.response.text or "")[:500]
                    logger.error(f"[OPENROUTER] HTTP error: {e} body={body_preview}")
                    detail = f"AI service error: {str(e)}"
                    if body_preview:
                        detail += f" | body: {body_preview}"
                    raise HTTPException(status_code=status, detail=detail)
                except httpx.RequestError as e:
                    if attempt < self.max_retries:
                        backoff = self.retry_backoff * (2 ** attempt)
                        logger.warning(f"[OPENROUTER] Request error {e.__class__.__name__}, retrying in {backoff:.1f}s")
                        await asyncio.sleep(backoff)
                        attempt += 1
                        continue
                    logger.error(f"[OPENROUTER] Request error: {repr(e)}")
                    raise HTTPException(status_code=503, detail=f"AI service network error: {e.__class__.__name__}: {str(e)}")
                except ValueError as e:
                    logger.error(f"[OPENROUTER] Invalid JSON in response: {e}")
                    raise HTTPException(status_code=502, detail=f"AI service returned invalid JSON: {str(e)}")


default_client = OpenRouterClient()


async def call_openrouter(
    model: str,
    messages: List[Dict[str, str]],
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> Dict[str, Any]:
    """Chat collaborator backed by the module-level client."""
    return await default_client.chat_completion(model, messages, temperature=temperature, max_tokens=max_tokens)
