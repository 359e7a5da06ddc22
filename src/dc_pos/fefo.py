"""Expiry classification and first-expiry-first-out batch selection."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Union

from . import log
from .constants import NEAR_EXPIRY_DAYS
from .models import Batch, EvaluatedBatch


DateLike = Union[date, datetime]

# (days-to-expiry ceiling, markdown percent), checked in order.
MARKDOWN_STEPS: tuple[tuple[int, Decimal], ...] = (
    (1, Decimal("30")),
    (3, Decimal("20")),
    (7, Decimal("10")),
)

NO_MARKDOWN = Decimal("0")


def _as_date(value: DateLike) -> date:
    # datetime is a subclass of date; drop the time of day.
    if isinstance(value, datetime):
        return value.date()
    return value


def evaluate_batch(batch: Batch, today: DateLike, near_expiry_days: int = NEAR_EXPIRY_DAYS) -> EvaluatedBatch:
    """Classify a single batch as expired, near expiry, or normal.

    A batch is near expiry from ``near_expiry_days`` days out through its
    expiry day.
    """
    if batch.expiry is None:
        return EvaluatedBatch(batch=batch, is_expired=False, is_near_expiry=False)

    days = (_as_date(batch.expiry) - _as_date(today)).days
    return EvaluatedBatch(
        batch=batch,
        is_expired=days < 0,
        is_near_expiry=0 <= days <= near_expiry_days,
        days_to_expiry=days,
    )


def evaluate_batches(
    batches: Iterable[Batch],
    today: DateLike,
    near_expiry_days: int = NEAR_EXPIRY_DAYS,
) -> List[EvaluatedBatch]:
    """Evaluate every batch against ``today`` using calendar-day granularity."""
    return [evaluate_batch(batch, today, near_expiry_days) for batch in batches]


def _fefo_key(evaluated: EvaluatedBatch) -> tuple[bool, date, datetime]:
    batch = evaluated.batch
    expiry = _as_date(batch.expiry) if batch.expiry is not None else date.max
    return (batch.expiry is None, expiry, batch.created_at)


def rank_fefo_candidates(batches: Iterable[Batch], today: DateLike) -> List[EvaluatedBatch]:
    """Return sellable batches in picking order.

    Batches without available stock and expired batches are dropped. The rest
    are ordered dated-before-undated, then by ascending expiry, then by the
    oldest creation timestamp.
    """
    available = [batch for batch in batches if batch.available > Decimal("0")]
    candidates = [evaluated for evaluated in evaluate_batches(available, today) if not evaluated.is_expired]
    return sorted(candidates, key=_fefo_key)


def select_fefo_batch(
    batches: Iterable[Batch],
    qty_needed: Optional[Decimal] = None,
    *,
    today: DateLike,
) -> Optional[Batch]:
    """Pick the batch a sale line should draw from, or ``None``.

    ``qty_needed`` does not influence the choice: a line is always bound to
    exactly one batch and no split allocation is attempted.
    """
    ranked = rank_fefo_candidates(batches, today)
    if not ranked:
        log.debug("No FEFO candidate found (qty_needed=%s)", qty_needed)
        return None
    return ranked[0].batch


def calculate_markdown(evaluated: EvaluatedBatch, base_price: Optional[Decimal] = None) -> Decimal:
    """Return the automatic markdown percentage for near-expiry stock.

    The result is one of 0, 10, 20 or 30. ``base_price`` is accepted for
    callers that have it at hand; the caller applies the percentage.
    """
    if not evaluated.is_near_expiry or evaluated.days_to_expiry is None:
        return NO_MARKDOWN
    for ceiling, percent in MARKDOWN_STEPS:
        if evaluated.days_to_expiry <= ceiling:
            return percent
    return NO_MARKDOWN
