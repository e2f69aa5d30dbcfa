"""
LessonLoop Backend — Pricing Functions
=======================================

What:  Pure functions that turn lessons and rate cards into money.
Who:   Billing runs, manual invoices and LoopAssist executors.

No I/O happens here. Every amount is an integer in minor units; VAT is
computed with Decimal and rounded half-up so 0.5p always rounds away from
zero, as accountants expect.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, FrozenSet, Optional, Sequence, Union

from lessonloop.models.roster import LESSON_COMPLETED, LESSON_SCHEDULED

DEFAULT_FALLBACK_RATE_MINOR = 3000

_BILLABLE_STATUSES = {
    "delivered": frozenset({LESSON_COMPLETED}),
    "upfront": frozenset({LESSON_SCHEDULED, LESSON_COMPLETED}),
}


def find_rate_for_duration(
    duration_mins: int,
    rate_cards: Sequence[Any],
    fallback_minor: int = DEFAULT_FALLBACK_RATE_MINOR,
) -> int:
    """
    Price for a lesson of `duration_mins`.

    Lookup order:
        1. no rate cards at all     → fallback_minor
        2. card with that duration  → its rate
        3. the org's default card   → its rate
        4. the first card           → its rate, or fallback_minor when that rate is 0
    """
    if not rate_cards:
        return fallback_minor

    for card in rate_cards:
        if card.duration_mins == duration_mins:
            return card.rate_amount

    for card in rate_cards:
        if card.is_default:
            return card.rate_amount

    return rate_cards[0].rate_amount or fallback_minor


def lesson_duration_minutes(start_at: datetime, end_at: datetime) -> int:
    seconds = (end_at - start_at).total_seconds()
    return int(Decimal(str(seconds / 60)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def resolve_lesson_rate(
    lesson: Any,
    student: Any,
    rate_cards: Sequence[Any],
    fallback_minor: int = DEFAULT_FALLBACK_RATE_MINOR,
) -> int:
    """
    Price one (lesson, student) line.

    A student-specific rate card wins when it still exists; otherwise the
    lesson is priced by its duration.
    """
    card_id = getattr(student, "default_rate_card_id", None) if student is not None else None
    if card_id is not None:
        for card in rate_cards:
            if card.id == card_id:
                return card.rate_amount

    duration = lesson_duration_minutes(lesson.start_at, lesson.end_at)
    return find_rate_for_duration(duration, rate_cards, fallback_minor)


def calculate_tax(subtotal_minor: int, vat_rate: Union[Decimal, int, float, str, None]) -> int:
    """VAT on `subtotal_minor` at `vat_rate` percent, rounded half-up to the minor unit."""
    if not vat_rate:
        return 0
    tax = Decimal(subtotal_minor) * Decimal(str(vat_rate)) / Decimal(100)
    return int(tax.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_total(subtotal_minor: int, tax_minor: int, credit_offset_minor: int = 0) -> int:
    return max(0, subtotal_minor + tax_minor - credit_offset_minor)


def line_amount(quantity: int, unit_price_minor: int) -> int:
    return quantity * unit_price_minor


def billable_statuses(billing_mode: Optional[str]) -> FrozenSet[str]:
    """Lesson statuses a billing run picks up. Cancelled lessons are never billed."""
    return _BILLABLE_STATUSES.get(billing_mode or "delivered", _BILLABLE_STATUSES["delivered"])
