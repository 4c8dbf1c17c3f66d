"""
OpenAI-compatible chat completion clients.

Both providers speak the same wire format:
- Perplexity (sonar): web-grounded search, used for discovery
- OpenAI (gpt-4o-mini): page extraction and validation

No retries or backoff here. A failed call raises ProviderError and the
caller decides whether that is fatal (acquisition) or degraded (validation).
"""

import time
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel

from .audit import CallAuditLog
from .config import PipelineSettings
from .errors import ProviderError

logger = structlog.get_logger()

PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"


class ProviderReply(BaseModel):
    """Text content of a chat completion plus usage."""

    content: str
    tokens_used: Optional[int] = None
    model: Optional[str] = None


class ChatProvider:
    """Minimal async client for one chat completion endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        api_key: Optional[str],
        model: str,
        timeout: float = 60.0,
        audit: Optional[CallAuditLog] = None,
        default_params: Optional[dict[str, Any]] = None,
    ):
        """Initialize provider.

        Args:
            name: Provider name used in errors and the call log
            url: Chat completions endpoint
            api_key: Bearer token; calls fail fast when missing
            model: Model name sent with every request
            timeout: Request timeout in seconds
            audit: Optional call audit log
            default_params: Extra body fields sent with every request
        """
        self.name = name
        self.url = url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.audit = audit or CallAuditLog()
        self.default_params = default_params or {}

    async def complete(
        self,
        system: str,
        user: str,
        action: str,
        temperature: float = 0.1,
        max_tokens: Optional[int] = None,
        json_response: bool = False,
        market_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> ProviderReply:
        """Send a system + user prompt and return the first choice's content.

        Raises:
            ProviderError: Missing key, transport failure, non-2xx status
                or a response without content
        """
        if not self.api_key:
            raise ProviderError(self.name, f"{self.name} API key not configured")

        body: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": temperature,
            **self.default_params,
        }
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if json_response:
            body["response_format"] = {"type": "json_object"}

        prompt = f"{system}\n\n---\n\n{user}"
        start = time.monotonic()
        response_text = ""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=body,
                )
                response_text = response.text
                response.raise_for_status()
                data = response.json()

            content = data["choices"][0]["message"]["content"]
            if not isinstance(content, str):
                raise ValueError("No content in response")
            tokens = (data.get("usage") or {}).get("total_tokens")

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            message = f"{self.name} API error {status}: {response_text[:500]}"
            await self._audit(action, prompt, response_text, start, None, message, market_id, job_id)
            raise ProviderError(self.name, message, status_code=status) from e
        except httpx.HTTPError as e:
            message = f"{self.name} request failed: {e}"
            await self._audit(action, prompt, response_text, start, None, message, market_id, job_id)
            raise ProviderError(self.name, message) from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            message = f"{self.name} returned an unreadable response: {e}"
            await self._audit(action, prompt, response_text, start, None, message, market_id, job_id)
            raise ProviderError(self.name, message) from e

        await self._audit(action, prompt, content, start, tokens, None, market_id, job_id)
        return ProviderReply(content=content, tokens_used=tokens, model=self.model)

    async def _audit(
        self,
        action: str,
        prompt: str,
        response: str,
        start: float,
        tokens: Optional[int],
        error: Optional[str],
        market_id: Optional[str],
        job_id: Optional[str],
    ) -> None:
        await self.audit.record(
            provider=self.name,
            action=action,
            prompt=prompt,
            response=response,
            duration_ms=int((time.monotonic() - start) * 1000),
            model=self.model,
            tokens_used=tokens,
            error_message=error,
            market_id=market_id,
            job_id=job_id,
        )


def perplexity_provider(settings: PipelineSettings, audit: Optional[CallAuditLog] = None) -> ChatProvider:
    """Web-grounded search provider restricted to recent results."""
    return ChatProvider(
        name="perplexity",
        url=PERPLEXITY_URL,
        api_key=settings.perplexity_api_key,
        model=settings.search_model,
        timeout=settings.provider_timeout,
        audit=audit,
        default_params={"search_recency_filter": settings.search_recency_filter},
    )


def openai_provider(
    settings: PipelineSettings,
    model: Optional[str] = None,
    audit: Optional[CallAuditLog] = None,
) -> ChatProvider:
    return ChatProvider(
        name="openai",
        url=OPENAI_URL,
        api_key=settings.openai_api_key,
        model=model or settings.extraction_model,
        timeout=settings.provider_timeout,
        audit=audit,
    )
