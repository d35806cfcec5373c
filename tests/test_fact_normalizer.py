"""
Unit tests for the fact normalizer: dates, penalties, categories and
the manual-review flag.
"""
from datetime import date

import pytest

from src.core.models import Category, DeadlineKind, Notice
from src.processing.fact_normalizer import (
    FactNormalizer,
    NotIdentified,
    find_amounts,
    normalize_date,
    parse_date,
    parse_penalty_amount,
)
from src.processing.notice_extractor import FieldGuess, RawDeadline, RawExtraction, RawPenalty


@pytest.fixture
def normalizer():
    return FactNormalizer()


def raw_with(**overrides):
    fields = {
        "category": FieldGuess.present("Tax"),
        "issuing_authority": FieldGuess.present("CBIC"),
        "reference_number": FieldGuess.present("REF-1"),
        "subject": FieldGuess.present("Notice"),
        "deadlines": [RawDeadline(date=FieldGuess.present("20/04/2024"), kind=FieldGuess.present("filing"))],
    }
    fields.update(overrides)
    return RawExtraction(**fields)


class TestDateParsing:
    """Test suite for regional date formats."""

    @pytest.mark.parametrize("text", [
        "20/04/2024",
        "20-04-2024",
        "20.04.2024",
        "2024-04-20",
        "20 April 2024",
        "20th April, 2024",
        "April 20, 2024",
        "20-Apr-2024",
        "Saturday, 20 April 2024",
    ])
    def test_supported_formats(self, text):
        assert parse_date(text) == date(2024, 4, 20)

    def test_day_first_wins_when_ambiguous(self):
        assert parse_date("03/04/2024") == date(2024, 4, 3)

    def test_month_first_fallback(self):
        assert parse_date("04/20/2024") == date(2024, 4, 20)

    def test_canonical_form_is_idempotent(self):
        canonical = normalize_date("20th April 2024")
        assert canonical == "2024-04-20"
        assert normalize_date(canonical) == canonical

    def test_single_embedded_date(self):
        assert parse_date("on or before 20/04/2024 positively") == date(2024, 4, 20)

    def test_multiple_embedded_dates_rejected(self):
        assert parse_date("between 01/04/2024 and 20/04/2024") is None

    @pytest.mark.parametrize("text", ["", "soon", "31/02/2024", "01/01/1850", None])
    def test_unparseable(self, text):
        assert parse_date(text) is None


class TestPenaltyParsing:
    """Test suite for monetary amount extraction."""

    def test_labelled_rupee_amount(self):
        assert parse_penalty_amount("penalty of Rs. 1,00,000 for non-filing") == (100000.0, "INR")

    def test_space_grouped_amount(self):
        assert parse_penalty_amount("Penalty of Rs. 100 000 for non-filing") == (100000.0, "INR")

    def test_space_grouping_needs_full_group(self):
        # "20" is not a thousands group, so the labelled amount stays 100
        assert parse_penalty_amount("Rs. 100 20 days after the due date") == (100.0, "INR")

    def test_scale_words(self):
        amounts = find_amounts("a fine of ₹ 2 lakh")
        assert amounts[0].value == 200000.0
        assert amounts[0].currency == "INR"

    def test_labelled_amount_preferred_over_bare_numbers(self):
        assert parse_penalty_amount("Section 234 penalty Rs 5000") == (5000.0, "INR")

    def test_ambiguous_amounts_left_unset(self):
        assert parse_penalty_amount("Rs. 5,000 or Rs. 10,000 whichever is higher") == (None, None)

    def test_unlabelled_number_requires_label(self):
        assert parse_penalty_amount("within 30 days") == (None, None)

    def test_rs_inside_word_is_not_a_label(self):
        assert parse_penalty_amount("respond within 48 hours") == (None, None)


class TestNormalize:
    """Test suite for FactNormalizer.normalize."""

    def test_not_a_notice(self, normalizer):
        result = normalizer.normalize(RawExtraction.not_a_notice(), "user-1", "msg-1")
        assert isinstance(result, NotIdentified)

    def test_full_notice(self, normalizer):
        notice = normalizer.normalize(raw_with(), "user-1", "msg-1")
        assert isinstance(notice, Notice)
        assert notice.category == Category.TAX
        assert notice.deadlines[0].date == date(2024, 4, 20)
        assert notice.deadlines[0].kind == DeadlineKind.FILING
        assert notice.needs_manual_review is False
        assert notice.source_message_id == "msg-1"

    @pytest.mark.parametrize("guess", [
        FieldGuess.present("Banking"),
        FieldGuess.missing(),
        FieldGuess.low_confidence("Tax", 0.2),
    ])
    def test_unknown_category_defaults_to_other(self, normalizer, guess):
        notice = normalizer.normalize(raw_with(category=guess), "user-1", "msg-1")
        assert notice.category == Category.OTHER

    def test_category_match_is_case_insensitive(self, normalizer):
        notice = normalizer.normalize(raw_with(category=FieldGuess.present("labor")), "user-1", "msg-1")
        assert notice.category == Category.LABOR

    def test_no_deadline_flags_manual_review(self, normalizer):
        notice = normalizer.normalize(raw_with(deadlines=[]), "user-1", "msg-1")
        assert notice.deadlines == []
        assert notice.needs_manual_review is True

    def test_unparseable_and_low_confidence_dates_dropped(self, normalizer):
        deadlines = [
            RawDeadline(date=FieldGuess.present("next month")),
            RawDeadline(date=FieldGuess.low_confidence("20/04/2024", 0.1)),
        ]
        notice = normalizer.normalize(raw_with(deadlines=deadlines), "user-1", "msg-1")
        assert notice.needs_manual_review is True

    def test_duplicate_deadlines_collapsed_and_sorted(self, normalizer):
        deadlines = [
            RawDeadline(date=FieldGuess.present("30/04/2024"), kind=FieldGuess.present("payment")),
            RawDeadline(date=FieldGuess.present("20/04/2024"), kind=FieldGuess.present("filing")),
            RawDeadline(date=FieldGuess.present("2024-04-20"), kind=FieldGuess.present("filing")),
        ]
        notice = normalizer.normalize(raw_with(deadlines=deadlines), "user-1", "msg-1")
        assert [d.date for d in notice.deadlines] == [date(2024, 4, 20), date(2024, 4, 30)]

    def test_unknown_kind_defaults_to_response(self, normalizer):
        deadlines = [RawDeadline(date=FieldGuess.present("20/04/2024"), kind=FieldGuess.present("hearing"))]
        notice = normalizer.normalize(raw_with(deadlines=deadlines), "user-1", "msg-1")
        assert notice.deadlines[0].kind == DeadlineKind.RESPONSE

    def test_penalty_from_text(self, normalizer):
        penalty = RawPenalty(text=FieldGuess.present("penalty of Rs. 50,000"))
        notice = normalizer.normalize(raw_with(penalty=penalty), "user-1", "msg-1")
        assert notice.penalty.amount == 50000.0
        assert notice.penalty.currency == "INR"

    def test_numeric_amount_field_gets_default_currency(self, normalizer):
        penalty = RawPenalty(amount=FieldGuess.present(25000))
        notice = normalizer.normalize(raw_with(penalty=penalty), "user-1", "msg-1")
        assert notice.penalty.amount == 25000.0
        assert notice.penalty.currency == "INR"

    def test_ambiguous_penalty_keeps_description(self, normalizer):
        penalty = RawPenalty(text=FieldGuess.present("Rs. 5,000 or Rs. 10,000"))
        notice = normalizer.normalize(raw_with(penalty=penalty), "user-1", "msg-1")
        assert notice.penalty.amount is None
        assert "Rs. 5,000" in notice.penalty.description

    def test_actions_deduplicated(self, normalizer):
        raw = raw_with(required_actions=["File return", "file  return", "Pay dues"])
        notice = normalizer.normalize(raw, "user-1", "msg-1")
        assert notice.required_actions == ["File return", "Pay dues"]

    def test_everything_missing_never_raises(self, normalizer):
        notice = normalizer.normalize(RawExtraction(), "user-1", "msg-1")
        assert notice.category == Category.OTHER
        assert notice.issuing_authority == ""
        assert notice.penalty is None
        assert notice.needs_manual_review is True
