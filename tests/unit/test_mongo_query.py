import pytest
from bson import ObjectId

from dbgateway.clients.mongo_query import MongoQueryParseError, parse_mongo_query


def test_parses_shell_find_with_modifiers():
    # Validates the common shell shape because most document queries use it.
    # Act
    query = parse_mongo_query(
        'db.users.find({"age": {"$gt": 30}}, {"name": 1}).sort({"age": -1}).skip(5).limit(10)'
    )

    # Assert
    assert query.collection == "users"
    assert query.operation == "find"
    assert query.filter == {"age": {"$gt": 30}}
    assert query.projection == {"name": 1}
    assert query.sort == {"age": -1}
    assert (query.skip, query.limit) == (5, 10)
    assert query.explain is False


def test_db_prefix_is_optional_and_count_is_normalized():
    # Validates aliases because both count spellings appear in saved queries.
    # Act
    query = parse_mongo_query('orders.count({"status": "open"});')

    # Assert
    assert query.collection == "orders"
    assert query.operation == "countDocuments"
    assert query.filter == {"status": "open"}


def test_parses_aggregate_explain_and_distinct():
    # Validates the remaining operations because explain and distinct share the parser.
    # Act
    agg = parse_mongo_query('db.orders.aggregate([{"$match": {"total": {"$gt": 5}}}]).explain()')
    distinct = parse_mongo_query('db.orders.distinct("status", {"total": 1})')

    # Assert
    assert agg.operation == "aggregate"
    assert agg.pipeline == [{"$match": {"total": {"$gt": 5}}}]
    assert agg.explain is True
    assert distinct.distinct_field == "status"
    assert distinct.filter == {"total": 1}


def test_parenthesis_inside_string_does_not_end_the_call():
    # Validates string-aware scanning because filters may contain regex text.
    # Act
    query = parse_mongo_query('db.logs.find({"msg": "failed (retry)"})')

    # Assert
    assert query.filter == {"msg": "failed (retry)"}


def test_extended_json_is_decoded():
    # Validates $oid support because ids are the most common filter.
    # Act
    query = parse_mongo_query('db.users.findOne({"_id": {"$oid": "64b7f0c2a1b2c3d4e5f60718"}})')

    # Assert
    assert query.operation == "findOne"
    assert query.filter["_id"] == ObjectId("64b7f0c2a1b2c3d4e5f60718")


def test_parses_json_document_form():
    # Validates the raw JSON shape because API callers send structured queries.
    # Act
    query = parse_mongo_query(
        '{"collection": "events", "operation": "aggregate", "pipeline": [{"$limit": 1}]}'
    )

    # Assert
    assert query.collection == "events"
    assert query.pipeline == [{"$limit": 1}]


@pytest.mark.parametrize(
    "text",
    [
        "",
        "users",
        "db.users.drop()",
        "db.users.find({bad json})",
        "db.users.find({}",
        'db.users.find({}).limit("ten")',
        "db.users.count().limit(3)",
        "db.users.find({}) trailing",
        '{"operation": "find"}',
        '["not", "an", "object"]',
    ],
)
def test_malformed_queries_raise(text):
    # Validates rejection because malformed queries must fail validation, not the driver.
    # Act / Assert
    with pytest.raises(MongoQueryParseError):
        parse_mongo_query(text)
