"""
Turn free-text provider output into filtered CandidateRecords.

Providers are asked for JSON but answer in prose often enough that parsing
is defensive:
1. strict parse of the whole reply (array, or object with an "events" array)
2. the first well-formed array of objects found by scanning each '['
3. the same scan after stripping trailing commas
4. give up and return no items
"""

import json
import re
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from ..errors import MalformedCandidateError
from ..models import ISO_DATE_PATTERN, CandidateRecord, DateWindow

logger = structlog.get_logger()

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*([\]}])")


def _events_from(value: Any) -> Optional[list[Any]]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict) and isinstance(value.get("events"), list):
        return value["events"]
    return None


def _looks_like_events(value: Any) -> bool:
    """An empty list, or a list holding at least one object."""
    return isinstance(value, list) and (not value or any(isinstance(v, dict) for v in value))


def _scan_for_array(text: str) -> Optional[list[Any]]:
    decoder = json.JSONDecoder()
    idx = text.find("[")
    while idx != -1:
        try:
            value, _ = decoder.raw_decode(text, idx)
            if _looks_like_events(value):
                return value
        except json.JSONDecodeError:
            pass
        idx = text.find("[", idx + 1)
    return None


def extract_event_items(content: Optional[str]) -> list[Any]:
    """Locate the array of event objects in a provider reply.

    Args:
        content: Raw reply text

    Returns:
        The raw items, or [] when no array can be recovered
    """
    if not content:
        return []

    text = _CODE_FENCE.sub("", content.strip())

    try:
        items = _events_from(json.loads(text))
        if items is not None:
            return items
    except json.JSONDecodeError:
        pass

    items = _scan_for_array(text)
    if items is not None:
        return items

    items = _scan_for_array(_TRAILING_COMMA.sub(r"\1", text))
    if items is not None:
        return items

    logger.warning("provider_reply_unparseable", preview=text[:200])
    return []


def to_candidate(item: Any) -> CandidateRecord:
    """Build a CandidateRecord from one raw item.

    Raises:
        MalformedCandidateError: Not an object, no title, or invalid fields
    """
    if not isinstance(item, dict):
        raise MalformedCandidateError(f"Expected an object, got {type(item).__name__}")

    try:
        candidate = CandidateRecord.model_validate(item)
    except ValidationError as e:
        raise MalformedCandidateError(str(e)) from e

    if not candidate.title:
        raise MalformedCandidateError("Candidate has no title")
    return candidate


def starts_before(candidate: CandidateRecord, window: DateWindow) -> bool:
    """True when the first ISO date in dateStart (or dateRaw) precedes the window.

    Candidates without a recognizable date are kept.
    """
    text = candidate.date_start or candidate.date_raw
    if not text:
        return False
    match = ISO_DATE_PATTERN.search(text)
    if not match:
        return False
    return match.group() < window.start.isoformat()


def filter_candidates(
    items: list[Any],
    window: DateWindow,
    default_source_url: Optional[str] = None,
) -> tuple[list[CandidateRecord], int]:
    """Drop malformed and past candidates.

    Args:
        items: Raw items from extract_event_items
        window: Job date window
        default_source_url: Filled in for candidates without a sourceUrl

    Returns:
        Tuple of (kept candidates, number discarded)
    """
    kept: list[CandidateRecord] = []
    discarded = 0

    for item in items:
        try:
            candidate = to_candidate(item)
        except MalformedCandidateError as e:
            logger.debug("candidate_malformed", error=str(e))
            discarded += 1
            continue

        if starts_before(candidate, window):
            logger.debug("candidate_in_past", title=candidate.title, date_start=candidate.date_start)
            discarded += 1
            continue

        if default_source_url and not candidate.source_url:
            candidate = candidate.model_copy(update={"source_url": default_source_url})
        kept.append(candidate)

    return kept, discarded
