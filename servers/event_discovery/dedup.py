"""
Deduplication of discovered events against the durable store.

Two layers:
- Exact: fingerprint of normalized (title, date, location). A stored event
  with the same fingerprint means the candidate is skipped.
- Fuzzy: word-set Jaccard similarity of titles among stored events in the
  same market on the same start date. Matches at or above the threshold are
  stored anyway, flagged as duplicates and sent to human review.

Duplicates are never merged or silently dropped by the fuzzy layer.
"""

import hashlib
import re
from typing import TYPE_CHECKING, Optional

import structlog

from .errors import StorageConflict
from .models import InsertOutcome, InsertResult, StoredRecord, ValidationStatus

if TYPE_CHECKING:
    from .store import EventStore

logger = structlog.get_logger()

# Similarity threshold for flagging a fuzzy duplicate
THRESHOLD = 0.85

FIELD_SEPARATOR = "|"

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: Optional[str]) -> str:
    """Normalize text for comparison.

    Lowercases, strips punctuation and collapses whitespace, so
    "Sunset Yoga!" and "  sunset   YOGA" normalize identically.
    """
    if not text:
        return ""

    text = text.lower()
    text = _NON_WORD.sub("", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip()


def fingerprint(title: str, date_start: Optional[str], location_name: Optional[str]) -> str:
    """Stable dedup key for an event.

    Fields are normalized and joined in a fixed order, so swapping
    title and location yields a different fingerprint.

    Args:
        title: Event title
        date_start: Start date text (YYYY-MM-DD)
        location_name: Venue name

    Returns:
        Hex digest of the normalized key
    """
    key_string = FIELD_SEPARATOR.join(
        [normalize_text(title), normalize_text(date_start), normalize_text(location_name)]
    )
    return hashlib.md5(key_string.encode("utf-8")).hexdigest()


def record_fingerprint(record: StoredRecord) -> str:
    return fingerprint(record.title, record.date_start, record.location_name)


def _word_set(text: str) -> set[str]:
    return set(normalize_text(text).split())


def title_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the word sets of two titles (0-1)."""
    words_a = _word_set(a)
    words_b = _word_set(b)

    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0

    intersection = len(words_a & words_b)
    union = len(words_a | words_b)
    return intersection / union


def _append_note(notes: Optional[str], note: str) -> str:
    if not notes:
        return note
    return f"{notes}; {note}"


class DeduplicationEngine:
    """Insert records while keeping at most one stored event per fingerprint."""

    def __init__(self, store: "EventStore", threshold: float = THRESHOLD):
        self.store = store
        self.threshold = threshold

    async def find_similar(self, record: StoredRecord) -> tuple[Optional[StoredRecord], float]:
        """Find the most similar stored event in the same market on the same date.

        Returns:
            (best_match, similarity); best_match is None when nothing
            shares the market and start date
        """
        if not record.date_start:
            return None, 0.0

        same_day = await self.store.list_records_on_date(record.market_id, record.date_start)

        best: Optional[StoredRecord] = None
        best_score = 0.0
        for other in same_day:
            score = title_similarity(record.title, other.title)
            if best is None or score > best_score:
                best, best_score = other, score

        return best, best_score

    async def insert(self, record: StoredRecord) -> InsertResult:
        """Insert a record unless an exact duplicate is already stored.

        Args:
            record: Record carrying the validation status computed upstream

        Returns:
            InsertResult describing whether it was inserted, flagged or skipped
        """
        fp = record_fingerprint(record)
        record = record.model_copy(update={"fingerprint": fp})

        existing = await self.store.find_record_by_fingerprint(fp)
        if existing is not None:
            logger.info(
                "exact_duplicate_skipped",
                title=record.title,
                fingerprint=fp,
                existing_id=existing.id,
            )
            return InsertResult(
                outcome=InsertOutcome.EXACT_DUPLICATE,
                fingerprint=fp,
                matched_id=existing.id,
                similarity=1.0,
            )

        outcome = InsertOutcome.INSERTED
        match, similarity = await self.find_similar(record)
        if match is not None and similarity >= self.threshold:
            outcome = InsertOutcome.FUZZY_DUPLICATE
            record = record.model_copy(update={
                "is_duplicate": True,
                "validation_status": ValidationStatus.NEEDS_REVIEW,
                "validation_notes": _append_note(
                    record.validation_notes,
                    f"Possible duplicate of '{match.title}' ({match.id}), "
                    f"title similarity {similarity:.2f}",
                ),
            })

        try:
            await self.store.insert_record(record)
        except StorageConflict:
            # Another job stored the same fingerprint between lookup and insert
            logger.info("exact_duplicate_skipped", title=record.title, fingerprint=fp, race=True)
            return InsertResult(
                outcome=InsertOutcome.EXACT_DUPLICATE,
                fingerprint=fp,
                similarity=1.0,
            )

        if outcome == InsertOutcome.FUZZY_DUPLICATE:
            logger.info(
                "fuzzy_duplicate_flagged",
                title=record.title,
                matched_id=match.id,
                similarity=round(similarity, 3),
            )

        return InsertResult(
            outcome=outcome,
            fingerprint=fp,
            record=record,
            matched_id=match.id if outcome == InsertOutcome.FUZZY_DUPLICATE else None,
            similarity=similarity if match is not None else None,
        )
