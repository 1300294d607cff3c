import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from hitcounter.errors import StoreError
from hitcounter.schema import ensure_schema, load_schema
from hitcounter.store import HitStore, Increment, Sum, Where, translate_error


def row(url="index", kind=1, start=0, end=86399, views=1, uniques=0):
    return {
        "url": url,
        "type": kind,
        "view_count": views,
        "unique_view_count": uniques,
        "from_time": start,
        "to_time": end,
    }


@pytest.fixture
def store(cookie_counter):
    return cookie_counter.store


def test_where_compiles_aliases_to_quoted_physical_names():
    schema = load_schema({"blueprints": {"hits": {"columns": {"from_time": "from"}}}})
    sql, params = (
        Where()
        .eq("url", "index")
        .ge("from_time", 10)
        .isin("type", [1, 32])
        .raw("view_count > :min", {"min": 3})
        .compile(schema.hits.column, lambda n: f'"{n}"')
    )
    assert sql == '"url" = :w_0 AND "from" >= :w_1 AND "type" IN (:w_2_0, :w_2_1) AND (view_count > :min)'
    assert params == {"w_0": "index", "w_1": 10, "w_2_0": 1, "w_2_1": 32, "min": 3}


def test_empty_in_list_matches_nothing():
    sql, _ = Where().isin("type", []).compile(lambda c: c, lambda n: n)
    assert sql == "1 = 0"


def test_crud_round(store):
    assert store.count("hits") == 0
    assert store.insert("hits", row()) is True
    assert store.insert("hits", row(url="about")) is True

    index = Where().eq("url", "index")
    assert store.count("hits", index) == 1
    assert store.update("hits", index, {"view_count": Increment(), "unique_view_count": Increment(2)}) == 1

    [got] = store.select("hits", index, ["view_count", "unique_view_count"])
    assert got == {"view_count": 2, "unique_view_count": 2}

    assert store.delete("hits", Where().eq("url", "about")) == 1
    assert store.count("hits") == 1


def test_sum_projection_is_zero_without_rows(store):
    [totals] = store.select("hits", Where().eq("url", "nothing"), [Sum("view_count"), Sum("unique_view_count")])
    assert totals == {"view_count": 0, "unique_view_count": 0}


def test_select_defaults_to_every_column(store):
    store.insert("hits", row())
    [got] = store.select("hits")
    assert set(got) == {"id", "url", "type", "view_count", "unique_view_count", "from_time", "to_time"}


def test_duplicate_bucket_row_is_a_constraint_error(store):
    store.insert("hits", row())
    with pytest.raises(StoreError) as exc:
        store.insert("hits", row())
    assert exc.value.kind == StoreError.CONSTRAINT
    # the session is usable again afterwards
    assert store.count("hits") == 1


def test_atomic_rolls_back_everything_on_error(store):
    with pytest.raises(RuntimeError):
        with store.atomic():
            store.insert("hits", row())
            store.insert("hits", row(url="about"))
            raise RuntimeError("boom")
    assert store.count("hits") == 0


def test_atomic_commits_at_the_outermost_block(store):
    with store.atomic():
        store.insert("hits", row())
        with store.atomic():
            store.update("hits", Where().eq("url", "index"), {"view_count": Increment()})
    [got] = store.select("hits", None, ["view_count"])
    assert got["view_count"] == 2


def test_awkward_identifiers_are_quoted(cookie_app):
    schema = load_schema({"blueprints": {
        "hits": {
            "table_name": "hit log",
            "columns": {"from_time": "from", "to_time": "to", "type": "select"},
            "constraints": {"uq_hits_bucket": None},
        },
        "unique_hits": {"table_name": "unique hit log"},
    }})
    with cookie_app.app_context():
        store = HitStore(schema)
        assert all(o.ok for o in ensure_schema(store))
        store.insert("hits", row())
        assert store.count("hits", Where().ge("from_time", 0).le("to_time", 86399).eq("type", 1)) == 1


def test_translate_error_kinds():
    locked = OperationalError("UPDATE hits", {}, Exception("database is locked"))
    gone = OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))
    dup = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
    assert translate_error(locked).kind == StoreError.TIMEOUT
    assert translate_error(gone).kind == StoreError.CONNECTION
    assert translate_error(dup).kind == StoreError.CONSTRAINT


def test_store_error_rejects_unknown_kinds():
    with pytest.raises(ValueError):
        StoreError("weird")


def test_free_predicate_cannot_rebind_generated_parameters(store):
    clash = Where().eq("url", "index").raw("view_count > :w_0", {"w_0": 0})
    with pytest.raises(ValueError, match="w_0"):
        store.count("hits", clash)
    with pytest.raises(ValueError, match="s_0"):
        store.update("hits", Where().raw("view_count = :s_0", {"s_0": 1}), {"view_count": Increment()})
