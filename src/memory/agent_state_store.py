"""
Agent state store - per (thread, agent) JSON blobs in Redis.

Keys:
    agent:state:{thread}:{agent}    string  JSON state
    thread:{thread}:agent_states    set     agent ids holding state in the thread
    agent:states                    zset    '["{thread}", "{agent}"]' scored by last access (ms)

State is an arbitrary JSON object. The store stamps ``_thread_id``,
``_agent_id``, ``_created_at`` (preserved across saves) and ``_updated_at``.
"""

from loguru import logger
import json
import uuid
from typing import Any, Dict, List, Optional, Tuple

from infrastructure.db.redis_client import get_redis_client, now_ms
from infrastructure.errors import AgentStateStoreError
from memory.schemas import utc_now_iso

AGENT_STATE_PREFIX = "agent:state:"
AGENT_STATE_INDEX = "agent:states"


def state_key(thread_id: str, agent_id: str) -> str:
    return f"{AGENT_STATE_PREFIX}{thread_id}:{agent_id}"


def thread_states_key(thread_id: str) -> str:
    return f"thread:{thread_id}:agent_states"


def index_member(thread_id: str, agent_id: str) -> str:
    """Recency-index member; a JSON pair so ids may contain ':'."""
    return json.dumps([thread_id, agent_id])


def split_index_member(member: str) -> Tuple[str, str]:
    thread_id, agent_id = json.loads(member)
    return thread_id, agent_id


def _require(thread_id: str, agent_id: Optional[str] = "-") -> None:
    if not thread_id:
        raise AgentStateStoreError("Thread ID is required")
    if not agent_id:
        raise AgentStateStoreError("Agent ID is required")


def _check_state(state: Any) -> Dict[str, Any]:
    if not isinstance(state, dict):
        raise AgentStateStoreError("Agent state must be an object")
    return state


class AgentStateStore:
    """Redis-backed agent state persistence."""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    def save_agent_state(
        self,
        thread_id: str,
        agent_id: str,
        state: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Persist *state* for (thread, agent).

        Args:
            thread_id: Owning thread
            agent_id: Owning agent
            state: JSON-serialisable dict
            ttl: Optional expiry in seconds

        Returns:
            The stored state including the ``_``-prefixed bookkeeping fields
        """
        _require(thread_id, agent_id)
        _check_state(state)
        key = state_key(thread_id, agent_id)

        try:
            created_at = state.get("_created_at")
            if not created_at:
                previous = self.client.get(key)
                if previous:
                    created_at = json.loads(previous).get("_created_at")
            now = utc_now_iso()
            stored = {
                **state,
                "_thread_id": thread_id,
                "_agent_id": agent_id,
                "_created_at": created_at or now,
                "_updated_at": now,
            }

            pipe = self.client.pipeline(transaction=False)
            pipe.set(key, json.dumps(stored))
            if ttl and ttl > 0:
                pipe.expire(key, ttl)
            pipe.sadd(thread_states_key(thread_id), agent_id)
            pipe.zadd(AGENT_STATE_INDEX, {index_member(thread_id, agent_id): now_ms()})
            pipe.execute()
            return stored
        except (TypeError, ValueError) as err:
            logger.error("Agent state for {}/{} is not serialisable: {}", thread_id, agent_id, err)
            raise AgentStateStoreError(
                f"Failed to save agent state for thread {thread_id}, agent {agent_id}", cause=err)
        except Exception as err:
            logger.error("Error saving agent state for {}/{}: {}", thread_id, agent_id, err)
            raise AgentStateStoreError(
                f"Failed to save agent state for thread {thread_id}, agent {agent_id}", cause=err)

    def load_agent_state(self, thread_id: str, agent_id: str) -> Dict[str, Any]:
        """Return the stored state, or ``{}`` when none exists. Touches the access index."""
        _require(thread_id, agent_id)
        try:
            raw = self.client.get(state_key(thread_id, agent_id))
            if not raw:
                return {}
            state = _check_state(json.loads(raw))
            self.client.zadd(AGENT_STATE_INDEX, {index_member(thread_id, agent_id): now_ms()})
            return state
        except AgentStateStoreError:
            raise
        except Exception as err:
            logger.error("Error loading agent state for {}/{}: {}", thread_id, agent_id, err)
            raise AgentStateStoreError(
                f"Failed to load agent state for thread {thread_id}, agent {agent_id}", cause=err)

    def list_thread_agent_states(self, thread_id: str) -> List[str]:
        """Agent ids that hold state in *thread_id*."""
        _require(thread_id)
        try:
            return sorted(self.client.smembers(thread_states_key(thread_id)))
        except Exception as err:
            logger.error("Error listing agent states for {}: {}", thread_id, err)
            raise AgentStateStoreError(f"Failed to list agent states for thread {thread_id}", cause=err)

    def delete_agent_state(self, thread_id: str, agent_id: str) -> bool:
        """Delete one state. False when it did not exist."""
        _require(thread_id, agent_id)
        key = state_key(thread_id, agent_id)
        try:
            if not self.client.exists(key):
                return False
            pipe = self.client.pipeline(transaction=False)
            pipe.delete(key)
            pipe.srem(thread_states_key(thread_id), agent_id)
            pipe.zrem(AGENT_STATE_INDEX, index_member(thread_id, agent_id))
            pipe.execute()
            return True
        except Exception as err:
            logger.error("Error deleting agent state for {}/{}: {}", thread_id, agent_id, err)
            raise AgentStateStoreError(
                f"Failed to delete agent state for thread {thread_id}, agent {agent_id}", cause=err)

    def delete_thread_agent_states(self, thread_id: str) -> int:
        """Delete every state of a thread; returns how many agents were cleared."""
        _require(thread_id)
        try:
            agent_ids = self.client.smembers(thread_states_key(thread_id))
            if not agent_ids:
                return 0
            pipe = self.client.pipeline(transaction=False)
            for agent_id in agent_ids:
                pipe.delete(state_key(thread_id, agent_id))
                pipe.zrem(AGENT_STATE_INDEX, index_member(thread_id, agent_id))
            pipe.delete(thread_states_key(thread_id))
            pipe.execute()
            return len(agent_ids)
        except Exception as err:
            logger.error("Error deleting agent states of thread {}: {}", thread_id, err)
            raise AgentStateStoreError(f"Failed to delete all agent states for thread {thread_id}", cause=err)

    def create_agent_state(
        self,
        thread_id: str,
        initial_state: Optional[Dict[str, Any]] = None,
        ttl: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Save a state under a freshly generated agent id.

        Returns:
            ``{"agent_id": ..., "state": ...}``
        """
        _require(thread_id)
        agent_id = uuid.uuid4().hex
        state = self.save_agent_state(thread_id, agent_id, dict(initial_state or {}), ttl=ttl)
        return {"agent_id": agent_id, "state": state}

    def get_all_agent_states(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """
        Most recently touched states first.

        Members whose key has expired (TTL) are skipped.
        """
        try:
            members = self.client.zrange(AGENT_STATE_INDEX, offset, offset + limit - 1, desc=True)
            if not members:
                return []
            pipe = self.client.pipeline(transaction=False)
            pairs = []
            for member in members:
                thread_id, agent_id = split_index_member(member)
                pairs.append((thread_id, agent_id))
                pipe.get(state_key(thread_id, agent_id))
            raws = pipe.execute()
        except Exception as err:
            logger.error("Error getting all agent states: {}", err)
            raise AgentStateStoreError("Failed to get all agent states", cause=err)

        results = []
        for (thread_id, agent_id), raw in zip(pairs, raws):
            if not raw:
                continue
            try:
                state = json.loads(raw)
            except ValueError as err:
                logger.warning("Unparseable agent state {}/{}: {}", thread_id, agent_id, err)
                continue
            results.append({"thread_id": thread_id, "agent_id": agent_id, "state": state})
        return results
