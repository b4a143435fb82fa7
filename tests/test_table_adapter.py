"""Tests for the Redis-first table adapter and the Supabase REST backend."""
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from infrastructure.errors import TableAdapterError, ValidationError
from memory.schemas import ListEntitiesOptions, QueryFilter
from services.crud_service import table_adapter as table_adapter_module
from services.crud_service.query_cache import QueryCache
from services.crud_service.table_adapter import (
    SupabaseBackend,
    TableAdapter,
    get_primary_key_for_table,
    get_primary_key_value,
    split_item_id,
)


class DictBackup:
    """In-memory stand-in for SupabaseBackend."""

    def __init__(self, rows=None):
        self.rows = {}
        self.calls = []
        for table, row in rows or []:
            self.rows[(table, get_primary_key_value(table, row))] = dict(row)

    def _key(self, table, item_id):
        return table, get_primary_key_value(table, split_item_id(table, item_id))

    def get_item_by_id(self, table, item_id):
        self.calls.append(("get", table))
        return self.rows.get(self._key(table, item_id))

    def create_item(self, table, item):
        self.calls.append(("create", table))
        self.rows[(table, get_primary_key_value(table, item))] = dict(item)
        return dict(item)

    def update_item(self, table, item_id, updates):
        self.calls.append(("update", table))
        key = self._key(table, item_id)
        if key not in self.rows:
            return None
        self.rows[key].update(updates)
        return dict(self.rows[key])

    def delete_item(self, table, item_id):
        self.calls.append(("delete", table))
        return self.rows.pop(self._key(table, item_id), None) is not None

    def get_data(self, table, options=None):
        self.calls.append(("list", table))
        return [dict(row) for (t, _), row in self.rows.items() if t == table]


@pytest.fixture
def adapter(redis_client, iso_clock):
    iso_clock(table_adapter_module)
    return TableAdapter(client=redis_client, query_cache=QueryCache(), use_redis=True)


class TestPrimaryKeys:

    def test_key_columns(self):
        assert get_primary_key_for_table("agents") == "id"
        assert get_primary_key_for_table("settings") == ("category", "key")

    def test_composite_value_joined(self):
        assert get_primary_key_value("agent_tools", {"agent_id": "a", "tool_id": "t"}) == "a:t"
        with pytest.raises(ValidationError):
            get_primary_key_value("agent_tools", {"agent_id": "a"})

    @pytest.mark.parametrize("item_id", ["ui:theme", ("ui", "theme"), {"category": "ui", "key": "theme"}])
    def test_split_composite_forms(self, item_id):
        assert split_item_id("settings", item_id) == {"category": "ui", "key": "theme"}

    def test_split_rejects_partial(self):
        with pytest.raises(ValidationError):
            split_item_id("settings", "ui")


class TestRedisCrud:

    def test_create_sets_id_and_timestamps(self, adapter, redis_client):
        row = adapter.create_item("agents", {"name": "writer"})
        assert row["id"] and row["created_at"] == row["updated_at"]
        assert redis_client.sismember("table:agents:ids", row["id"])
        assert adapter.get_item_by_id("agents", row["id"]) == row

    def test_missing_without_backup(self, adapter):
        assert adapter.get_item_by_id("agents", "ghost") is None

    def test_update_merges_and_ignores_key_columns(self, adapter):
        row = adapter.create_item("agents", {"name": "old", "model_id": "m1"})
        updated = adapter.update_item("agents", row["id"], {"id": "hijack", "name": "new"})
        assert updated["id"] == row["id"]
        assert updated["model_id"] == "m1" and updated["name"] == "new"
        assert updated["updated_at"] > row["updated_at"]
        assert adapter.update_item("agents", "ghost", {"name": "x"}) is None

    def test_delete(self, adapter, redis_client):
        row = adapter.create_item("agents", {"name": "bye"})
        assert adapter.delete_item("agents", row["id"]) is True
        assert not redis_client.sismember("table:agents:ids", row["id"])
        assert adapter.delete_item("agents", row["id"]) is False

    def test_composite_key_rows(self, adapter, redis_client):
        adapter.create_item("settings", {"category": "ui", "key": "theme", "value": "dark"})
        assert redis_client.exists("table:settings:ui:theme")
        adapter.update_item("settings", ("ui", "theme"), {"value": "light", "category": "other"})
        assert adapter.get_item_by_id("settings", {"category": "ui", "key": "theme"})["value"] == "light"
        with pytest.raises(ValidationError):
            adapter.create_item("settings", {"category": "ui", "value": "x"})

    def test_upsert_exists_count_batch(self, adapter):
        adapter.upsert_item("agents", {"id": "a1", "name": "one"})
        adapter.upsert_item("agents", {"id": "a1", "name": "uno"})
        adapter.upsert_item("agents", {"id": "a2", "name": "two"})
        assert adapter.get_item_by_id("agents", "a1")["name"] == "uno"
        assert adapter.exists_item("agents", "a1") is True
        assert adapter.exists_item("agents", "ghost") is False
        assert adapter.count_items("agents") == 2
        assert adapter.count_items("agents", [QueryFilter("name", "eq", "two")]) == 1
        batch = adapter.batch_get_items("agents", ["a2", "ghost", "a1"])
        assert [r["id"] if r else None for r in batch] == ["a2", None, "a1"]


class TestListing:

    def test_get_data_runs_query_options(self, adapter):
        for name, score in [("a", 3), ("b", 1), ("c", 2)]:
            adapter.create_item("content", {"type": "post", "title": name, "score": score})
        options = ListEntitiesOptions(sort_by="score", limit=2, select=["title"])
        assert adapter.get_data("content", options) == [{"title": "b"}, {"title": "c"}]

    def test_results_cached_until_a_write(self, adapter, redis_client):
        adapter.create_item("agents", {"id": "a1", "name": "one"})
        assert len(adapter.get_data("agents")) == 1
        redis_client.delete("table:agents:ids")
        assert len(adapter.get_data("agents")) == 1
        assert adapter.cache_stats()["hits"] == 1
        adapter.create_item("agents", {"id": "a2", "name": "two"})
        assert [r["id"] for r in adapter.get_data("agents")] == ["a2"]

    def test_clear_cache(self, adapter):
        adapter.get_data("agents")
        adapter.clear_cache()
        assert adapter.cache_stats()["size"] == 0


class TestFallback:

    def test_redis_miss_hydrates_from_backup(self, redis_client):
        backup = DictBackup([("agents", {"id": "a1", "name": "remote"})])
        adapter = TableAdapter(client=redis_client, backup=backup, query_cache=QueryCache(), use_redis=True)
        assert adapter.get_item_by_id("agents", "a1")["name"] == "remote"
        assert redis_client.exists("table:agents:a1")
        adapter.get_item_by_id("agents", "a1")
        assert backup.calls.count(("get", "agents")) == 1

    def test_empty_redis_table_lists_backup(self, redis_client):
        backup = DictBackup([("agents", {"id": "a1", "name": "remote"})])
        adapter = TableAdapter(client=redis_client, backup=backup, query_cache=QueryCache(), use_redis=True)
        assert [r["id"] for r in adapter.get_data("agents")] == ["a1"]

    def test_redis_down_uses_backup(self, down_redis):
        backup = DictBackup()
        adapter = TableAdapter(client=down_redis, backup=backup, query_cache=QueryCache(), use_redis=True)
        row = adapter.create_item("agents", {"id": "a1", "name": "x"})
        assert backup.rows[("agents", "a1")] == row
        assert adapter.get_item_by_id("agents", "a1")["name"] == "x"
        assert adapter.update_item("agents", "a1", {"name": "y"})["name"] == "y"
        assert adapter.batch_get_items("agents", ["a1"])[0]["name"] == "y"
        assert adapter.delete_item("agents", "a1") is True
        assert adapter.get_data("agents") == []

    def test_redis_down_without_backup_raises(self, down_redis):
        adapter = TableAdapter(client=down_redis, query_cache=QueryCache(), use_redis=True)
        with pytest.raises(TableAdapterError) as info:
            adapter.get_item_by_id("agents", "a1")
        assert info.value.cause is not None

    def test_adapter_off_goes_straight_to_backup(self, redis_client):
        backup = DictBackup()
        adapter = TableAdapter(client=redis_client, backup=backup, query_cache=QueryCache(), use_redis=False)
        adapter.create_item("agents", {"id": "a1", "name": "x"})
        assert adapter.exists_item("agents", "a1") is True
        assert redis_client.keys("table:*") == []
        assert [c[0] for c in backup.calls] == ["create", "get"]


class FakeQuery:
    """Records the PostgREST builder chain."""

    def __init__(self, data):
        self.data = data
        self.calls = []

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return method

    def execute(self):
        return SimpleNamespace(data=self.data)


class TestSupabaseBackend:

    def _backend(self, data):
        query = FakeQuery(data)
        client = MagicMock()
        client.table.return_value = query
        return SupabaseBackend(client=client), client, query

    def test_get_matches_every_key_column(self):
        backend, client, query = self._backend([{"category": "ui", "key": "theme"}])
        assert backend.get_item_by_id("settings", "ui:theme") == {"category": "ui", "key": "theme"}
        client.table.assert_called_with("settings")
        assert query.calls == [
            ("select", ("*",), {}),
            ("eq", ("category", "ui"), {}),
            ("eq", ("key", "theme"), {}),
        ]

    def test_get_missing(self):
        backend, _, _ = self._backend([])
        assert backend.get_item_by_id("agents", "ghost") is None

    def test_list_builds_filters_order_and_range(self):
        backend, _, query = self._backend([{"id": "1"}])
        options = ListEntitiesOptions(
            filters=[QueryFilter("status", "in", ["a", "b"]), QueryFilter("deleted_at", "is", None),
                     QueryFilter("score", "gte", 3)],
            sort_by="score", sort_order="desc", limit=10, offset=20, select=["id", "score"],
        )
        assert backend.get_data("agents", options) == [{"id": "1"}]
        assert query.calls == [
            ("select", ("id,score",), {}),
            ("in_", ("status", ["a", "b"]), {}),
            ("is_", ("deleted_at", "null"), {}),
            ("gte", ("score", 3), {}),
            ("order", ("score",), {"desc": True}),
            ("range", (20, 29), {}),
        ]

    def test_delete_reports_matches(self):
        backend, _, _ = self._backend([{"id": "1"}])
        assert backend.delete_item("agents", "1") is True

    def test_client_errors_wrapped(self):
        client = MagicMock()
        client.table.side_effect = RuntimeError("network")
        with pytest.raises(TableAdapterError) as info:
            SupabaseBackend(client=client).create_item("agents", {"id": "1"})
        assert isinstance(info.value.cause, RuntimeError)
