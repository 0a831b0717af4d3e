"""Tests for hotel/route shape normalization and tag inference."""

import pytest

from tourpro.core.knowledge_shapes import (
    FlatHotelList,
    NestedHotelTree,
    UnknownShape,
    classify_hotel_shape,
    infer_tags,
    normalize_hotels,
    normalize_routes,
    parse_stars,
)


@pytest.mark.parametrize(
    "value,expected",
    [(5, 5.0), ("4", 4.0), ("4.5", 4.5), ("5*", 5.0), ("3 stars", 3.0), ("★★★★", 4.0), (None, None), ("n/a", None), (True, None), (0, None)],
)
def test_parse_stars(value, expected):
    assert parse_stars(value) == expected


def test_classify_flat_list():
    assert isinstance(classify_hotel_shape([{"name": "A", "city": "Hanoi"}]), FlatHotelList)
    assert isinstance(classify_hotel_shape({"hotels": []}), FlatHotelList)


def test_classify_nested_tree():
    raw = {"countries": [{"name": "Vietnam", "cities": [{"name": "Hanoi", "hotels": [{"name": "Metropole"}]}]}]}
    shape = classify_hotel_shape(raw)
    assert isinstance(shape, NestedHotelTree)
    assert shape.groups == [("Vietnam", "Hanoi", [{"name": "Metropole"}])]


def test_classify_unknown():
    assert isinstance(classify_hotel_shape("hotels"), UnknownShape)
    assert isinstance(classify_hotel_shape({"version": 1}), UnknownShape)


def test_normalize_flat_hotels_with_aliases():
    raw = [
        {"hotel_name": "Sofitel Metropole", "location": "Hanoi", "starRating": "5*", "tags": ["heritage", "luxury"]},
        {"name": "Little Hoian", "city": "Hoi An", "stars": 3, "priceRange": "$"},
    ]
    hotels = normalize_hotels(raw)

    assert [h.name for h in hotels] == ["Sofitel Metropole", "Little Hoian"]
    assert hotels[0].city == "Hanoi"
    assert hotels[0].stars == 5.0
    assert hotels[0].tags == ["heritage", "luxury"]
    assert hotels[1].price_range == "$"
    assert "budget" in hotels[1].tags


def test_normalize_nested_tree_with_mappings():
    raw = {
        "Vietnam": {
            "Hanoi": [{"name": "Hotel de l'Opera", "stars": 5}],
            "Da Nang": {"hotels": [{"name": "Beach Resort Spa", "stars": 4}]},
        },
        "Cambodia": {"cities": [{"name": "Siem Reap", "hotels": [{"name": "Heritage Suites"}]}]},
    }
    hotels = normalize_hotels(raw)
    by_name = {h.name: h for h in hotels}

    assert by_name["Hotel de l'Opera"].city == "Hanoi"
    assert by_name["Beach Resort Spa"].city == "Da Nang"
    assert by_name["Heritage Suites"].city == "Siem Reap"
    assert set(by_name["Beach Resort Spa"].tags) >= {"wellness", "beach", "relaxation"}


def test_malformed_entries_are_skipped():
    raw = [
        {"name": "Valid", "city": "Hue"},
        {"city": "Hue"},
        "just a string",
        None,
        {"name": "No city"},
        {"name": "Odd stars", "city": "Hue", "stars": "unrated"},
    ]
    hotels = normalize_hotels(raw)
    assert [h.name for h in hotels] == ["Valid", "Odd stars"]
    assert hotels[1].stars is None


def test_normalize_unknown_shape_returns_empty():
    assert normalize_hotels(42) == []


def test_infer_tags_deduplicates():
    tags = infer_tags("Beach Resort & Spa", "A beach resort with spa and yoga", "Resort", 5)
    assert len(tags) == len(set(tags))
    assert tags[:3] == ["wellness", "beach", "relaxation"]
    assert "luxury" in tags


def test_infer_tags_star_thresholds():
    assert "budget" in infer_tags("Guesthouse", None, None, 2)
    assert "luxury" not in infer_tags("Guesthouse", None, None, 4)
    assert infer_tags("Plain", None, None, None) == []


@pytest.mark.parametrize(
    "rules",
    [
        {"routes": [{"from": "Hanoi", "to": "Halong", "mode": "Car"}]},
        {"segments": [{"departure": "Hanoi", "arrival": "Halong", "mode": "Car"}]},
        [{"origin": "Hanoi", "destination": "Halong", "mode": "Car"}],
    ],
)
def test_normalize_routes_shapes(rules):
    routes = normalize_routes(rules)
    assert len(routes) == 1
    assert routes[0].origin == "Hanoi"
    assert routes[0].destination == "Halong"
    assert routes[0].record["mode"] == "Car"


def test_normalize_routes_skips_incomplete():
    assert normalize_routes({"routes": [{"from": "Hanoi"}, "x"]}) == []
    assert normalize_routes("free text rules") == []
