"""Tests for fuzzy business matching."""

import pytest

from review_pipeline.errors import DirectoryNotLoadedError
from review_pipeline.matcher import match_business, rank_candidates
from review_pipeline.models import Business


def _make_business(business_id, name, place_id=None):
    return Business(business_id=business_id, name=name, place_id=place_id)


def _directory():
    return [
        _make_business("b1", "Blue Bottle Coffee", "place-blue"),
        _make_business("b2", "Blue Bottle Cafe"),
        _make_business("b3", "Red Door Bakery"),
        _make_business("b4", "Harbor Fish House"),
    ]


class TestPlaceIdMatch:
    def test_place_id_hit_is_certain(self):
        result = match_business("Something Else Entirely", _directory(), place_id="place-blue")
        assert result.business_id == "b1"
        assert result.confidence == 100
        assert result.alternatives == []
        assert result.method == "place_id"

    def test_unknown_place_id_falls_back_to_name(self):
        result = match_business("Red Door Bakery", _directory(), place_id="nope")
        assert result.business_id == "b3"
        assert result.method == "name"


class TestNameMatch:
    def test_exact_name_matches_with_full_confidence(self):
        result = match_business("red door bakery", _directory())
        assert result.matched
        assert result.business_id == "b3"
        assert result.confidence == 100

    def test_alternatives_exclude_the_match(self):
        result = match_business("Blue Bottle Coffee", _directory())
        assert result.business_id == "b1"
        ids = [a.business_id for a in result.alternatives]
        assert "b1" not in ids
        assert "b2" in ids

    def test_below_auto_accept_is_unmatched_with_alternatives(self):
        # "bluebot" vs "bluebottlecafe": 7/14, vs "bluebottlecoffee": 7/16
        result = match_business("Blue Bot", _directory())
        assert not result.matched
        assert result.business_id is None
        assert result.confidence == 50
        assert [a.business_id for a in result.alternatives][:2] == ["b2", "b1"]

    def test_nothing_above_floor(self):
        result = match_business("zzzzzzzzzzzzzzzz", _directory())
        assert result.business_id is None
        assert result.confidence == 0
        assert result.alternatives == []
        assert result.method == "none"

    def test_empty_name(self):
        result = match_business("", _directory())
        assert result.business_id is None
        assert result.alternatives == []

    def test_max_alternatives_cap(self):
        directory = [_make_business(f"b{i}", f"Corner Shop {i}") for i in range(10)]
        result = match_business("Corner Shop", directory, max_alternatives=3)
        assert len(result.alternatives) <= 3

    def test_directory_not_loaded_raises(self):
        with pytest.raises(DirectoryNotLoadedError):
            match_business("Red Door Bakery", None)

    def test_empty_directory_is_no_match(self):
        result = match_business("Red Door Bakery", [])
        assert result.business_id is None


class TestRankCandidates:
    def test_sorted_best_first(self):
        ranked = rank_candidates("Blue Bottle Coffee", _directory())
        scores = [a.confidence for a in ranked]
        assert scores == sorted(scores, reverse=True)
        assert ranked[0].business_id == "b1"

    def test_floor_discards_weak_candidates(self):
        directory = [
            _make_business("keep", "aaabbbbbbb"),  # distance 7 of 10 -> 0.30
            _make_business("drop", "aabbbbbbbb"),  # distance 8 of 10 -> 0.20
        ]
        ranked = rank_candidates("aaaaaaaaaa", directory, floor=0.30)
        assert [a.business_id for a in ranked] == ["keep"]
        assert ranked[0].confidence == 30

    def test_ties_keep_directory_order(self):
        directory = [_make_business("x", "Alpha"), _make_business("y", "Alpha")]
        ranked = rank_candidates("Alpha", directory)
        assert [a.business_id for a in ranked] == ["x", "y"]
