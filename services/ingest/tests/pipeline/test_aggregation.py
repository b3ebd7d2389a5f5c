"""Tests for venue qualification, ranking, review aggregation and record mapping."""

from services.ingest.pipeline.aggregation import (
    REVIEW_SEPARATOR,
    aggregate_reviews,
    composite_score,
    filter_qualified,
    primary_category,
    rank_venues,
    select_top,
    to_venue_record,
)
from services.ingest.tests.conftest import make_cell, make_detail, make_entry
from services.ingest.types import Coordinate


class TestQualification:
    def test_threshold_is_inclusive(self):
        entries = [
            make_entry("a", rating_count=9),
            make_entry("b", rating_count=10),
            make_entry("c", rating_count=250),
        ]
        assert [e.id for e in filter_qualified(entries, 10)] == ["b", "c"]

    def test_missing_count_treated_as_zero(self):
        entries = [make_entry("a", rating_count=None)]
        assert filter_qualified(entries, 1) == []
        assert [e.id for e in filter_qualified(entries, 0)] == ["a"]


class TestRanking:
    def test_volume_dominates_rating(self):
        a = make_entry("a", rating=4.9, rating_count=20)
        b = make_entry("b", rating=4.0, rating_count=500)
        assert composite_score(a) == 0.7 * 20 + 0.3 * 4.9
        assert [e.id for e in rank_venues([a, b])] == ["b", "a"]

    def test_many_reviews_beat_perfect_rating(self):
        a = make_entry("a", rating=5.0, rating_count=1)
        b = make_entry("b", rating=1.0, rating_count=100)
        assert [e.id for e in rank_venues([a, b])] == ["b", "a"]

    def test_missing_rating_counts_as_zero(self):
        assert composite_score(make_entry("a", rating=None, rating_count=10)) == 7.0

    def test_ties_keep_input_order(self):
        entries = [make_entry(pid, rating=4.0, rating_count=50) for pid in ("x", "y", "z")]
        assert [e.id for e in rank_venues(entries)] == ["x", "y", "z"]

    def test_select_top(self):
        ranked = [make_entry(str(i)) for i in range(8)]
        assert [e.id for e in select_top(ranked, 5)] == ["0", "1", "2", "3", "4"]
        assert len(select_top(ranked[:3], 5)) == 3


class TestAggregateReviews:
    def test_joins_in_details_order(self):
        details = [make_detail("a", ["one", "two"]), make_detail("b", ["three"])]
        result = aggregate_reviews(details, 8000)
        assert result.text == REVIEW_SEPARATOR.join(["one", "two", "three"])
        assert result.count == 3

    def test_blank_snippets_ignored(self):
        details = [make_detail("a", ["  ", "", "real"])]
        result = aggregate_reviews(details, 8000)
        assert result.text == "real"
        assert result.count == 1

    def test_missing_text_ignored(self):
        detail = make_detail("a", ["kept"])
        detail.reviews[0].text = None
        result = aggregate_reviews([detail], 8000)
        assert result.text == ""
        assert result.count == 0

    def test_budget_never_cuts_a_snippet(self):
        details = [make_detail("a", ["a" * 10, "b" * 10, "c" * 10])]
        # 10 + 2 + 10 = 22 fits, adding the third would need 34
        result = aggregate_reviews(details, 25)
        assert result.text == "a" * 10 + REVIEW_SEPARATOR + "b" * 10
        assert len(result.text) <= 25

    def test_count_includes_snippets_over_budget(self):
        details = [make_detail("a", ["x" * 100, "y" * 100, "z" * 100])]
        result = aggregate_reviews(details, 150)
        assert result.text == "x" * 100
        assert result.count == 3

    def test_stops_at_first_overflow(self):
        details = [make_detail("a", ["short", "x" * 100, "tiny"])]
        result = aggregate_reviews(details, 50)
        assert result.text == "short"

    def test_first_snippet_larger_than_budget(self):
        result = aggregate_reviews([make_detail("a", ["x" * 100])], 50)
        assert result.text == ""
        assert result.count == 1

    def test_exact_fit(self):
        result = aggregate_reviews([make_detail("a", ["abc", "de"])], 7)
        assert result.text == "abc\n\nde"

    def test_no_details(self):
        result = aggregate_reviews([], 8000)
        assert result.text == ""
        assert result.count == 0


class TestPrimaryCategory:
    def test_priority_order(self):
        assert primary_category(["restaurant", "bar", "food"]) == "bar"
        assert primary_category(["cafe", "night_club"]) == "night_club"

    def test_falls_back_to_first_type(self):
        assert primary_category(["museum", "point_of_interest"]) == "museum"

    def test_empty(self):
        assert primary_category([]) is None
        assert primary_category(None) is None


class TestVenueRecord:
    def test_maps_fields(self):
        cell = make_cell(cell_id="cell-1")
        entry = make_entry(
            "p1", name="Tosca", rating=4.5, rating_count=900,
            types=["restaurant", "bar"], location=Coordinate(lat=37.79, lng=-122.40),
        )
        record = to_venue_record(entry, cell)
        assert record.external_id == "p1"
        assert record.cell_id == "cell-1"
        assert record.name == "Tosca"
        assert record.category == "bar"
        assert record.rating == 4.5
        assert record.rating_count == 900
        assert record.location == Coordinate(lat=37.79, lng=-122.40)

    def test_fallbacks(self):
        cell = make_cell(lat=1.0, lng=2.0)
        entry = make_entry("p1", name="", types=[], location=None)
        record = to_venue_record(entry, cell)
        assert record.name == "Unknown"
        assert record.category is None
        assert record.location == Coordinate(lat=1.0, lng=2.0)
