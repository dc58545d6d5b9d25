from datetime import datetime

import mongomock
import pytest
from pymongo import ASCENDING, DESCENDING

from api_features import RESERVED_PARAMS, APIFeatures, parse_query_params
from database import PendingQuery
from errors import AppError
from schemas import TOUR_FIELD_TYPES


@pytest.fixture
def collection():
    coll = mongomock.MongoClient()["features"]["tour"]
    coll.insert_many([
        {"name": "Forest Hiker", "difficulty": "easy", "price": 397, "duration": 5, "created_at": datetime(2024, 1, 1)},
        {"name": "Sea Explorer", "difficulty": "medium", "price": 497, "duration": 7, "created_at": datetime(2024, 1, 2)},
        {"name": "Snow Adventurer", "difficulty": "difficult", "price": 997, "duration": 4, "created_at": datetime(2024, 1, 3)},
        {"name": "City Wanderer", "difficulty": "easy", "price": 1197, "duration": 9, "created_at": datetime(2024, 1, 4)},
        {"name": "Park Camper", "difficulty": "easy", "price": 1497, "duration": 10, "created_at": datetime(2024, 1, 5)},
    ])
    return coll


def features(collection, params):
    return APIFeatures(PendingQuery(collection), params, TOUR_FIELD_TYPES)


def test_parse_query_params_reads_bracket_operators():
    params = parse_query_params([("duration[gte]", "5"), ("price[lt]", "1500"), ("difficulty", "easy")])
    assert params == {"duration": {"gte": "5"}, "price": {"lt": "1500"}, "difficulty": "easy"}


@pytest.mark.parametrize("reserved", RESERVED_PARAMS)
def test_reserved_keys_never_reach_conditions(collection, reserved):
    conditions = features(collection, {reserved: "2", "difficulty": "easy"}).build_conditions()
    assert reserved not in conditions
    assert conditions == {"difficulty": "easy"}


@pytest.mark.parametrize("op", ["gt", "gte", "lt", "lte"])
def test_comparison_operators_are_prefixed(collection, op):
    conditions = features(collection, {"price": {op: "500"}}).build_conditions()
    assert conditions == {"price": {f"${op}": 500.0}}


def test_values_are_cast_to_field_types(collection):
    conditions = features(collection, {"duration": "5", "secret_tour": "false", "name": "123"}).build_conditions()
    assert conditions == {"duration": 5, "secret_tour": False, "name": "123"}


def test_operator_substrings_in_values_are_left_alone(collection):
    conditions = features(collection, {"name": "gt lt gte"}).build_conditions()
    assert conditions == {"name": "gt lt gte"}


def test_unknown_operator_is_rejected(collection):
    with pytest.raises(AppError) as info:
        features(collection, {"price": {"where": "1"}}).build_conditions()
    assert info.value.status_code == 400


def test_uncastable_value_is_rejected(collection):
    with pytest.raises(AppError) as info:
        features(collection, {"price": {"gte": "cheap"}}).build_conditions()
    assert info.value.status_code == 400
    assert info.value.message == "Invalid price: cheap"


def test_sort_splits_fields_and_directions(collection):
    f = features(collection, {"sort": "-price,name"}).sort()
    assert f.query.sort_keys == [("price", DESCENDING), ("name", ASCENDING)]


def test_sort_defaults_to_newest_first(collection):
    f = features(collection, {}).sort()
    assert f.query.sort_keys == [("created_at", DESCENDING)]


def test_limit_fields_builds_inclusion_projection(collection):
    f = features(collection, {"fields": "name,price"}).limit_fields()
    assert f.query.projection == {"name": 1, "price": 1}


def test_limit_fields_excludes_version_key_by_default(collection):
    f = features(collection, {}).limit_fields()
    assert f.query.projection == {"__v": 0}


def test_paginate_computes_skip_and_limit(collection):
    f = features(collection, {"page": "2", "limit": "5"}).paginate()
    assert (f.query.skip_count, f.query.limit_count) == (5, 5)


@pytest.mark.parametrize("params", [{}, {"page": "abc", "limit": "x"}, {"page": "0", "limit": "-3"}])
def test_paginate_defaults_to_first_page_of_ten(collection, params):
    f = features(collection, params).paginate()
    assert (f.query.skip_count, f.query.limit_count) == (0, 10)


def test_chained_features_resolve_against_collection(collection):
    params = parse_query_params([
        ("difficulty", "easy"),
        ("price[gte]", "400"),
        ("sort", "-price"),
        ("fields", "name,price"),
        ("limit", "1"),
        ("page", "2"),
    ])
    docs = features(collection, params).filter().sort().limit_fields().paginate().query.all()
    assert [d["name"] for d in docs] == ["City Wanderer"]
    assert set(docs[0]) == {"_id", "name", "price"}


def test_query_is_not_executed_until_resolved(collection):
    f = features(collection, {"difficulty": "easy"}).filter()
    collection.delete_many({"name": "Park Camper"})
    assert len(f.query.all()) == 2


def test_hidden_fields_cannot_be_selected(collection):
    collection.insert_one({"name": "Secretive", "password": "hash", "created_at": datetime(2024, 2, 1)})
    query = PendingQuery(collection, {"name": "Secretive"}, hidden=("password",))
    doc = APIFeatures(query, {"fields": "name,password"}).limit_fields().query.first()
    assert "password" not in doc
    assert doc["name"] == "Secretive"


def test_include_hidden_returns_hidden_field(collection):
    collection.insert_one({"name": "Secretive", "password": "hash"})
    doc = PendingQuery(collection, {"name": "Secretive"}, hidden=("password",)).include_hidden("password").first()
    assert doc["password"] == "hash"


def test_hidden_fields_cannot_be_filtered_or_sorted_on(collection):
    query = PendingQuery(collection, hidden=("password",))
    f = APIFeatures(query, {"password": {"gt": "$2b"}, "name": "Secretive", "sort": "-password,name"})
    assert f.build_conditions() == {"name": "Secretive"}
    assert f.sort().query.sort_keys == [("name", ASCENDING)]


def test_sort_on_only_hidden_fields_falls_back_to_default(collection):
    query = PendingQuery(collection, hidden=("password",))
    f = APIFeatures(query, {"sort": "password"}).sort()
    assert f.query.sort_keys == [("created_at", DESCENDING)]
