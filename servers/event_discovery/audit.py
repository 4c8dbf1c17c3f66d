"""Write-only audit log of external provider calls."""

from typing import TYPE_CHECKING, Optional

import structlog

from .models import CallLog

if TYPE_CHECKING:
    from .store import EventStore

logger = structlog.get_logger()

# Prompts and responses are clipped so one runaway reply can't bloat the store
MAX_TEXT_CHARS = 10000


def _clip(text: Optional[str]) -> str:
    return (text or "")[:MAX_TEXT_CHARS]


class CallAuditLog:
    """Record every provider call with its prompt, response and timing."""

    def __init__(self, store: Optional["EventStore"] = None):
        self.store = store

    async def record(
        self,
        provider: str,
        action: str,
        prompt: str,
        response: str,
        duration_ms: int,
        model: Optional[str] = None,
        tokens_used: Optional[int] = None,
        error_message: Optional[str] = None,
        market_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> CallLog:
        """Persist one call.

        Args:
            provider: perplexity, openai or http
            action: discovery, crawl_extraction or validation
            prompt: Prompt sent (clipped)
            response: Raw response text (clipped)
            duration_ms: Wall time of the call
            model: Model name, if any
            tokens_used: Total tokens reported by the provider
            error_message: Set when the call failed
            market_id: Market the call was made for
            job_id: Job the call belongs to

        Returns:
            The stored CallLog entry
        """
        entry = CallLog(
            provider=provider,
            model=model,
            action=action,
            prompt=_clip(prompt),
            response=_clip(response),
            duration_ms=duration_ms,
            tokens_used=tokens_used,
            status="error" if error_message else "success",
            error_message=error_message,
            market_id=market_id,
            job_id=job_id,
        )

        if error_message:
            logger.warning(
                "provider_call_failed",
                provider=provider,
                action=action,
                job_id=job_id,
                duration_ms=duration_ms,
                error=error_message,
            )
        else:
            logger.debug(
                "provider_call",
                provider=provider,
                action=action,
                job_id=job_id,
                duration_ms=duration_ms,
                tokens_used=tokens_used,
            )

        if self.store is not None:
            await self.store.insert_call_log(entry)
        return entry
