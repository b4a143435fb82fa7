"""Tests for per-(thread, agent) state persistence."""
import json

import pytest

from infrastructure.errors import AgentStateStoreError
from memory import agent_state_store as agent_state_module
from memory.agent_state_store import AgentStateStore, index_member


@pytest.fixture
def states(redis_client, tick):
    tick(agent_state_module)
    return AgentStateStore(client=redis_client)


class TestSaveAndLoad:

    def test_round_trip_with_bookkeeping(self, states):
        stored = states.save_agent_state("t1", "planner", {"step": 2, "plan": ["a", "b"]})
        loaded = states.load_agent_state("t1", "planner")
        assert loaded == stored
        assert loaded["step"] == 2
        assert loaded["_thread_id"] == "t1" and loaded["_agent_id"] == "planner"

    def test_created_at_survives_resave(self, states):
        first = states.save_agent_state("t1", "planner", {"step": 1})
        second = states.save_agent_state("t1", "planner", {"step": 2})
        assert second["_created_at"] == first["_created_at"]
        assert states.load_agent_state("t1", "planner")["step"] == 2

    def test_missing_state_is_empty(self, states):
        assert states.load_agent_state("t1", "nobody") == {}

    def test_ttl_sets_expiry(self, states, redis_client):
        states.save_agent_state("t1", "cache", {"x": 1}, ttl=60)
        assert 0 < redis_client.ttl("agent:state:t1:cache") <= 60
        states.save_agent_state("t1", "keep", {"x": 1})
        assert redis_client.ttl("agent:state:t1:keep") == -1

    def test_indexes_updated(self, states, redis_client):
        states.save_agent_state("t1", "planner", {})
        assert redis_client.sismember("thread:t1:agent_states", "planner")
        assert redis_client.zscore("agent:states", index_member("t1", "planner")) is not None

    @pytest.mark.parametrize("thread_id,agent_id", [("", "a"), ("t", ""), (None, "a")])
    def test_blank_ids_rejected(self, states, thread_id, agent_id):
        with pytest.raises(AgentStateStoreError):
            states.save_agent_state(thread_id, agent_id, {})

    def test_non_dict_state_rejected(self, states):
        with pytest.raises(AgentStateStoreError, match="must be an object"):
            states.save_agent_state("t1", "a", ["not", "a", "dict"])

    def test_unserialisable_state_wrapped(self, states):
        with pytest.raises(AgentStateStoreError) as info:
            states.save_agent_state("t1", "a", {"handle": object()})
        assert isinstance(info.value.cause, TypeError)

    def test_corrupt_payload_raises(self, states, redis_client):
        redis_client.set("agent:state:t1:a", json.dumps([1, 2]))
        with pytest.raises(AgentStateStoreError):
            states.load_agent_state("t1", "a")


class TestListingAndDeletion:

    def test_list_thread_agents(self, states):
        states.save_agent_state("t1", "writer", {})
        states.save_agent_state("t1", "critic", {})
        states.save_agent_state("t2", "writer", {})
        assert states.list_thread_agent_states("t1") == ["critic", "writer"]

    def test_delete_one(self, states, redis_client):
        states.save_agent_state("t1", "writer", {})
        assert states.delete_agent_state("t1", "writer") is True
        assert states.delete_agent_state("t1", "writer") is False
        assert redis_client.zscore("agent:states", index_member("t1", "writer")) is None

    def test_delete_thread_states(self, states):
        states.save_agent_state("t1", "writer", {})
        states.save_agent_state("t1", "critic", {})
        states.save_agent_state("t2", "writer", {})
        assert states.delete_thread_agent_states("t1") == 2
        assert states.list_thread_agent_states("t1") == []
        assert states.load_agent_state("t2", "writer") != {}
        assert states.delete_thread_agent_states("t1") == 0

    def test_create_generates_agent_id(self, states):
        created = states.create_agent_state("t1", {"mode": "draft"})
        assert created["agent_id"]
        assert states.load_agent_state("t1", created["agent_id"])["mode"] == "draft"

    def test_all_states_most_recent_first(self, states):
        states.save_agent_state("t1", "a", {"n": 1})
        states.save_agent_state("t1", "b", {"n": 2})
        states.save_agent_state("t2", "c", {"n": 3})
        states.load_agent_state("t1", "a")
        listed = states.get_all_agent_states()
        assert [(s["thread_id"], s["agent_id"]) for s in listed] == [("t1", "a"), ("t2", "c"), ("t1", "b")]
        assert listed[0]["state"]["n"] == 1
        assert len(states.get_all_agent_states(limit=1, offset=1)) == 1

    def test_all_states_with_colons_in_ids(self, states):
        states.save_agent_state("org:42", "agent-1", {"n": 1})
        listed = states.get_all_agent_states()
        assert [(s["thread_id"], s["agent_id"]) for s in listed] == [("org:42", "agent-1")]
        assert listed[0]["state"]["n"] == 1

    def test_all_states_skip_expired_keys(self, states, redis_client):
        states.save_agent_state("t1", "a", {})
        redis_client.delete("agent:state:t1:a")
        assert states.get_all_agent_states() == []


class TestFailures:

    def test_redis_down(self, down_redis):
        states = AgentStateStore(client=down_redis)
        with pytest.raises(AgentStateStoreError):
            states.load_agent_state("t1", "a")
        with pytest.raises(AgentStateStoreError):
            states.get_all_agent_states()
