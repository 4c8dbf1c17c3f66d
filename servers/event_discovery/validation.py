"""
Per-candidate validation against a classification model.

One provider call per candidate with a fixed sleep between calls. A failed
call never fails the job: the candidate comes back as needs_review with a
reduced confidence and a note explaining why.
"""

import asyncio
import json
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ValidationError

from .errors import ProviderError, ValidationProviderError
from .models import (
    CandidateRecord,
    Market,
    Recommendation,
    ValidationResult,
    ValidationStatus,
)
from .prompts import PromptBuilder
from .providers import ChatProvider

logger = structlog.get_logger()

ACTION = "validation"
VALIDATION_MAX_TOKENS = 800

# Degraded verdicts
API_ERROR_CONFIDENCE = 0.5
API_ERROR_NOTE = "Validation API error: needs manual review"
FAILED_CONFIDENCE = 0.3
FAILED_NOTE = "Validation failed: needs manual review"

ACCEPT_THRESHOLD = 0.7


class ValidationContext(BaseModel):
    """What a candidate is validated against."""

    category_name: str
    pillar: str
    market: Optional[Market] = None
    job_id: Optional[str] = None


def degraded_result(candidate: CandidateRecord, confidence: float, note: str) -> ValidationResult:
    return ValidationResult(
        is_valid=True,
        confidence=confidence,
        issues=[note],
        corrections={},
        recommendation=Recommendation.NEEDS_REVIEW,
        corrected_record=candidate,
    )


def review_status(result: ValidationResult, accept_threshold: float = ACCEPT_THRESHOLD) -> Optional[ValidationStatus]:
    """Map a verdict to the status a record is stored with.

    Returns:
        None for reject (never stored), validated for a confident accept,
        needs_review for everything else
    """
    if result.recommendation == Recommendation.REJECT:
        return None
    if result.recommendation == Recommendation.ACCEPT and result.confidence >= accept_threshold:
        return ValidationStatus.VALIDATED
    return ValidationStatus.NEEDS_REVIEW


def _clamp_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return API_ERROR_CONFIDENCE
    return min(1.0, max(0.0, float(value)))


def _recommendation(value: Any) -> Recommendation:
    try:
        return Recommendation(str(value).strip().lower())
    except ValueError:
        return Recommendation.NEEDS_REVIEW


def _issues(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [str(issue) for issue in value if issue]


def _field_alias(key: str) -> str:
    field = CandidateRecord.model_fields.get(key)
    if field is not None and field.alias:
        return field.alias
    return key


def apply_corrections(candidate: CandidateRecord, corrections: dict[str, Any]) -> Optional[CandidateRecord]:
    """Overlay corrections on a candidate.

    Returns:
        The corrected record, or None if the corrections make it invalid
    """
    merged = candidate.model_dump(by_alias=True)
    for key, value in corrections.items():
        merged[_field_alias(key)] = value
    try:
        corrected = CandidateRecord.model_validate(merged)
    except ValidationError:
        return None
    return corrected if corrected.title else None


def parse_verdict(candidate: CandidateRecord, content: str) -> ValidationResult:
    """Build a ValidationResult from the provider's JSON verdict.

    Raises:
        ValidationProviderError: Reply is not a JSON object
    """
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, TypeError) as e:
        raise ValidationProviderError(f"Unparseable verdict: {e}") from e
    if not isinstance(data, dict):
        raise ValidationProviderError(f"Verdict is not an object: {type(data).__name__}")

    corrections = data.get("corrections")
    if not isinstance(corrections, dict):
        corrections = {}

    issues = _issues(data.get("issues"))

    corrected = apply_corrections(candidate, corrections)
    if corrected is None:
        corrected = candidate
        issues.append("Corrections could not be applied")

    is_valid = data.get("isValid", True)
    return ValidationResult(
        is_valid=is_valid if isinstance(is_valid, bool) else True,
        confidence=_clamp_confidence(data.get("confidence", API_ERROR_CONFIDENCE)),
        issues=issues,
        corrections=corrections,
        recommendation=_recommendation(data.get("recommendation", Recommendation.NEEDS_REVIEW.value)),
        corrected_record=corrected,
    )


class ValidationStage:
    """Validate candidates one at a time, rate limited by a fixed delay."""

    def __init__(
        self,
        provider: ChatProvider,
        prompts: Optional[PromptBuilder] = None,
        delay: float = 0.3,
        temperature: float = 0.1,
    ):
        self.provider = provider
        self.prompts = prompts or PromptBuilder()
        self.delay = delay
        self.temperature = temperature

    async def validate(
        self, candidates: list[CandidateRecord], context: ValidationContext
    ) -> list[ValidationResult]:
        """
        Validate every candidate.

        Args:
            candidates: Candidates from acquisition
            context: Category, pillar and market to judge against

        Returns:
            One result per candidate, in input order
        """
        results: list[ValidationResult] = []
        for index, candidate in enumerate(candidates):
            if index > 0 and self.delay > 0:
                await asyncio.sleep(self.delay)
            results.append(await self.validate_one(candidate, context))
        return results

    async def validate_one(self, candidate: CandidateRecord, context: ValidationContext) -> ValidationResult:
        prompt = self.prompts.validation(
            candidate,
            category_name=context.category_name,
            pillar=context.pillar,
            market=context.market,
        )

        try:
            reply = await self.provider.complete(
                prompt.system,
                prompt.user,
                action=ACTION,
                temperature=self.temperature,
                max_tokens=VALIDATION_MAX_TOKENS,
                json_response=True,
                market_id=context.market.id if context.market else None,
                job_id=context.job_id,
            )
        except ProviderError as e:
            logger.warning(
                "validation_item_failed",
                title=candidate.title,
                job_id=context.job_id,
                error=str(e),
                status_code=e.status_code,
            )
            return degraded_result(candidate, API_ERROR_CONFIDENCE, API_ERROR_NOTE)

        try:
            return parse_verdict(candidate, reply.content)
        except (ValidationProviderError, TypeError, ValueError) as e:
            logger.warning(
                "validation_item_failed",
                title=candidate.title,
                job_id=context.job_id,
                error=str(e),
            )
            return degraded_result(candidate, FAILED_CONFIDENCE, FAILED_NOTE)
