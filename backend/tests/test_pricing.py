"""
LessonLoop Backend — Pricing Unit Tests
========================================

What:  Rate lookup, duration rounding and VAT rounding. Pure functions,
       no database.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

from lessonloop.services.pricing import (
    DEFAULT_FALLBACK_RATE_MINOR,
    billable_statuses,
    calculate_tax,
    calculate_total,
    find_rate_for_duration,
    lesson_duration_minutes,
    resolve_lesson_rate,
)


def card(duration, rate, is_default=False):
    return SimpleNamespace(id=uuid.uuid4(), duration_mins=duration, rate_amount=rate, is_default=is_default)


def lesson(minutes):
    start = datetime(2025, 1, 10, 16, 0, tzinfo=timezone.utc)
    return SimpleNamespace(start_at=start, end_at=start + timedelta(minutes=minutes))


class TestFindRateForDuration:

    def test_no_cards_uses_fallback(self):
        assert find_rate_for_duration(30, []) == DEFAULT_FALLBACK_RATE_MINOR
        assert find_rate_for_duration(30, [], fallback_minor=1234) == 1234

    def test_exact_duration_match(self):
        cards = [card(30, 2500), card(45, 3500, is_default=True), card(60, 4500)]
        assert find_rate_for_duration(60, cards) == 4500

    def test_default_card_when_no_duration_match(self):
        cards = [card(30, 2500), card(60, 4500, is_default=True)]
        assert find_rate_for_duration(45, cards) == 4500

    def test_first_card_when_no_default(self):
        cards = [card(30, 2500), card(60, 4500)]
        assert find_rate_for_duration(45, cards) == 2500

    def test_first_card_with_zero_rate_falls_back(self):
        cards = [card(30, 0), card(60, 4500)]
        assert find_rate_for_duration(45, cards, fallback_minor=999) == 999


class TestLessonRate:

    def test_duration_rounds_half_up(self):
        start = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert lesson_duration_minutes(start, start + timedelta(minutes=29, seconds=30)) == 30
        assert lesson_duration_minutes(start, start + timedelta(minutes=29, seconds=29)) == 29

    def test_student_rate_card_wins(self):
        special = card(60, 9000)
        cards = [card(30, 2500, is_default=True), special]
        student = SimpleNamespace(default_rate_card_id=special.id)
        assert resolve_lesson_rate(lesson(30), student, cards) == 9000

    def test_missing_student_card_prices_by_duration(self):
        cards = [card(30, 2500), card(60, 4500)]
        student = SimpleNamespace(default_rate_card_id=uuid.uuid4())
        assert resolve_lesson_rate(lesson(60), student, cards) == 4500


class TestTax:

    def test_zero_or_missing_rate(self):
        assert calculate_tax(10000, Decimal("0")) == 0
        assert calculate_tax(10000, None) == 0

    def test_standard_rate(self):
        assert calculate_tax(10000, Decimal("20.00")) == 2000

    def test_half_up_rounding(self):
        # 2.5 → 3, not banker's 2
        assert calculate_tax(25, Decimal("10")) == 3
        assert calculate_tax(7000, Decimal("17.5")) == 1225

    def test_total_never_negative(self):
        assert calculate_total(1000, 200, 5000) == 0
        assert calculate_total(1000, 200, 300) == 900


class TestBillableStatuses:

    def test_delivered_bills_completed_only(self):
        assert billable_statuses("delivered") == frozenset({"completed"})

    def test_upfront_bills_scheduled_too(self):
        assert billable_statuses("upfront") == frozenset({"scheduled", "completed"})

    def test_unknown_mode_defaults_to_delivered(self):
        assert billable_statuses(None) == frozenset({"completed"})
