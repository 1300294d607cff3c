import json

import pytest
from sqlalchemy import text

from hitcounter.errors import ConfigError
from hitcounter.extensions import db
from hitcounter.schema import (
    CREATED,
    EXISTS,
    FAILED,
    DEFAULT_BLUEPRINTS,
    ensure_schema,
    load_schema,
    load_schema_file,
    schema_from_config,
)
from hitcounter.store import HitStore


def test_defaults_cover_both_tables():
    schema = load_schema()
    assert schema.hits.table_name == "hits"
    assert schema.unique_hits.column("hashed_name") == "hashed_name"
    assert "uq_hits_bucket" in schema.hits.constraints


def test_override_is_deep_merged_over_defaults():
    schema = load_schema({"blueprints": {"hits": {"table_name": "page_hits", "columns": {"url": "page"}}}})
    assert schema.hits.table_name == "page_hits"
    assert schema.hits.column("url") == "page"
    assert schema.hits.column("view_count") == "view_count"
    assert schema.has("unique_hits")


def test_unknown_aliases_and_keys_are_ignored():
    schema = load_schema({
        "something_else": {"x": 1},
        "blueprints": {"sessions": {"table_name": "sessions", "columns": {}}},
    })
    assert set(schema.tables) == {"hits", "unique_hits"}


def test_replace_mode_keeps_only_what_is_given():
    hits_only = {"blueprints": {"hits": DEFAULT_BLUEPRINTS["blueprints"]["hits"]}}
    schema = load_schema(hits_only, merge=False)
    assert not schema.has("unique_hits")
    with pytest.raises(ConfigError):
        schema.table("unique_hits")


def test_missing_required_column_fails_fast():
    broken = {"blueprints": {"hits": {"table_name": "hits", "columns": {"id": "id", "url": "url"}}}}
    with pytest.raises(ConfigError, match="missing columns"):
        load_schema(broken, merge=False)


def test_missing_table_name_fails_fast():
    with pytest.raises(ConfigError):
        load_schema({"blueprints": {"hits": {"table_name": ""}}})


def test_schema_needs_a_hits_blueprint():
    with pytest.raises(ConfigError):
        load_schema({"blueprints": {}}, merge=False)


def test_list_constraints_get_generated_names():
    schema = load_schema({"blueprints": {"unique_hits": {"constraints": ["UNIQUE ({hashed_name}, {type}, {created_at})"]}}})
    assert list(schema.unique_hits.constraints) == ["unique_hits_c0"]


def test_schema_file_and_config_keys(tmp_path):
    path = tmp_path / "schema.json"
    path.write_text(json.dumps({"blueprints": {"hits": {"table_name": "from_file"}}}))
    assert load_schema_file(str(path)).hits.table_name == "from_file"
    assert schema_from_config({"HIT_COUNTER_SCHEMA_FILE": str(path)}).hits.table_name == "from_file"
    assert schema_from_config({"HIT_COUNTER_BLUEPRINTS": {"blueprints": {"hits": {"table_name": "cfg"}}}}).hits.table_name == "cfg"

    (tmp_path / "bad.json").write_text("{nope")
    with pytest.raises(ConfigError):
        load_schema_file(str(tmp_path / "bad.json"))


def test_ensure_schema_is_idempotent(cookie_app):
    with cookie_app.app_context():
        store = cookie_app.extensions["hit_counter"].store
        # create_app already ran it once
        again = ensure_schema(store)
        assert again
        assert all(o.status == EXISTS for o in again)
        assert store.constraint_exists("hits", "uq_hits_bucket")


def test_ensure_schema_reports_each_item(cookie_app):
    schema = load_schema({"blueprints": {
        "hits": {
            "table_name": "fresh_hits",
            # index names are database wide; drop the default one
            "constraints": {
                "uq_hits_bucket": None,
                "uq_fresh_hits_bucket": "UNIQUE ({url}, {type}, {from_time}, {to_time})",
            },
        },
        "unique_hits": {"table_name": "fresh_unique_hits"},
    }})
    with cookie_app.app_context():
        outcomes = ensure_schema(HitStore(schema))
    by_item = {(o.table, o.item): o.status for o in outcomes}
    assert by_item[("fresh_hits", "table")] == CREATED
    assert by_item[("fresh_hits", "column:view_count")] == CREATED
    assert by_item[("fresh_hits", "constraint:uq_fresh_hits_bucket")] == CREATED
    assert ("fresh_hits", "constraint:uq_hits_bucket") not in by_item
    assert by_item[("fresh_unique_hits", "table")] == CREATED


def test_one_bad_item_does_not_block_the_rest(cookie_app):
    partial = json.loads(json.dumps(DEFAULT_BLUEPRINTS))
    partial["blueprints"]["hits"]["table_name"] = "partial_hits"
    del partial["blueprints"]["hits"]["types"]["to_time"]
    del partial["blueprints"]["unique_hits"]
    schema = load_schema(partial, merge=False)

    with cookie_app.app_context():
        outcomes = ensure_schema(HitStore(schema))

    status = {o.item: o for o in outcomes}
    assert status["table"].status == CREATED
    assert status["column:url"].status == CREATED
    assert status["column:to_time"].status == FAILED
    assert "no type declared" in status["column:to_time"].error
    # the constraint references the missing column and fails on its own
    assert status["constraint:uq_hits_bucket"].status == FAILED


def test_missing_columns_are_added_to_existing_tables(cookie_app):
    schema = load_schema({"blueprints": {"hits": {"table_name": "legacy_hits"}}})
    with cookie_app.app_context():
        db.session.execute(text(
            "CREATE TABLE legacy_hits (id INTEGER PRIMARY KEY, url TEXT, type INTEGER, "
            "from_time BIGINT, to_time BIGINT)"
        ))
        db.session.commit()

        store = HitStore(schema)
        outcomes = [o for o in ensure_schema(store) if o.table == "legacy_hits"]
        status = {o.item: o.status for o in outcomes}
        assert status["table"] == EXISTS
        assert status["column:url"] == EXISTS
        assert status["column:view_count"] == CREATED
        assert status["column:unique_view_count"] == CREATED
        assert {"view_count", "unique_view_count"} <= store.column_names("legacy_hits")
