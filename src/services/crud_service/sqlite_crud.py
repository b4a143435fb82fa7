"""
SQLite CRUD - embedded relational store for memory and app-builder data.

Wraps the tables of ``infrastructure.db.sqlite_client``:

    memory:      memory_threads, messages, embeddings, agent_states
    workflows:   workflows, workflow_steps, gql_cache
    app builder: apps, users, integrations, app_code_blocks, files,
                 terminal_sessions

JSON-valued columns are stored as TEXT and decoded on read. Embedding
vectors are stored as float32 blobs.
"""

from loguru import logger
import json
import re
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np
from sqlalchemy import Table, and_, delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from infrastructure.db.sqlite_client import (
    agent_states_table,
    app_code_blocks_table,
    apps_table,
    embeddings_table,
    files_table,
    get_sqlite_session,
    gql_cache_table,
    integrations_table,
    memory_threads_table,
    messages_table,
    sqlite_workflow_steps_table,
    sqlite_workflows_table,
    terminal_sessions_table,
    users_table,
)
from infrastructure.errors import DatabaseError, ValidationError
from memory.schemas import ROLES, utc_now_iso

JSON_COLUMNS = frozenset({
    "metadata", "state_data", "variables", "response",
    "parameters_schema", "config", "credentials",
})

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _encode(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        k: json.dumps(v) if k in JSON_COLUMNS and v is not None and not isinstance(v, str) else v
        for k, v in values.items()
    }


def _decode(row: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    record = dict(row)
    for k in JSON_COLUMNS & record.keys():
        value = record[k]
        if isinstance(value, str):
            try:
                record[k] = json.loads(value)
            except ValueError:
                pass
    return record


def validate_email(email: str) -> str:
    """Return *email* normalised to lower case, or raise ValidationError."""
    if not isinstance(email, str) or not _EMAIL_RE.match(email.strip()):
        raise ValidationError("Invalid user", [f"'{email}' is not a valid email address"])
    return email.strip().lower()


class SQLiteCrud:
    """
    CRUD for the embedded store.

    Args:
        session_factory: Zero-arg callable returning a Session
                         (default: ``get_sqlite_session``)
    """

    def __init__(self, session_factory: Optional[Callable] = None):
        self.session_factory = session_factory or get_sqlite_session

    # ------------------------------------------------------------------
    # Generic table helpers
    # ------------------------------------------------------------------

    def _run(self, action: str, fn: Callable):
        session = self.session_factory()
        try:
            result = fn(session)
            session.commit()
            return result
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("SQLite {} failed: {}", action, e)
            raise DatabaseError(f"Failed to {action}", cause=e)
        finally:
            session.close()

    @staticmethod
    def _key(table: Table, pk: Any):
        if isinstance(pk, Mapping):
            return and_(*(table.c[k] == v for k, v in pk.items()))
        return table.c.id == pk

    def _insert(self, table: Table, values: Dict[str, Any]) -> Dict[str, Any]:
        now = utc_now_iso()
        values = {k: v for k, v in values.items() if k in table.c}
        if "id" in table.c and not values.get("id"):
            values["id"] = str(uuid.uuid4())
        if "created_at" in table.c:
            values.setdefault("created_at", now)
        if "updated_at" in table.c:
            values.setdefault("updated_at", now)
        if "metadata" in table.c and values.get("metadata") is None:
            values["metadata"] = {}
        self._run(f"insert into {table.name}", lambda s: s.execute(insert(table).values(**_encode(values))))
        return _decode(values)

    def _get(self, table: Table, pk: Any) -> Optional[Dict[str, Any]]:
        return self._run(
            f"read {table.name}",
            lambda s: _decode(s.execute(select(table).where(self._key(table, pk))).mappings().first()),
        )

    def _select(
        self,
        table: Table,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        stmt = select(table)
        for k, v in (where or {}).items():
            if v is not None:
                stmt = stmt.where(table.c[k] == v)
        if order_by:
            column = table.c[order_by]
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._run(
            f"list {table.name}",
            lambda s: [_decode(row) for row in s.execute(stmt).mappings().all()],
        )

    def _update(self, table: Table, pk: Any, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        protected = {"id", "created_at"} | (set(pk) if isinstance(pk, Mapping) else set())
        values = {k: v for k, v in updates.items() if k in table.c and k not in protected}
        if "updated_at" in table.c:
            values["updated_at"] = utc_now_iso()
        clause = self._key(table, pk)

        def op(session):
            if session.execute(update(table).where(clause).values(**_encode(values))).rowcount == 0:
                return None
            return _decode(session.execute(select(table).where(clause)).mappings().first())

        return self._run(f"update {table.name}", op)

    def _delete(self, table: Table, pk: Any) -> bool:
        return self._run(
            f"delete from {table.name}",
            lambda s: s.execute(delete(table).where(self._key(table, pk))).rowcount > 0,
        )

    # ------------------------------------------------------------------
    # Memory threads
    # ------------------------------------------------------------------

    def create_memory_thread(
        self,
        name: str,
        agent_id: Optional[str] = None,
        network_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        thread_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not name:
            raise ValidationError("Invalid memory thread", ["name is required"])
        return self._insert(memory_threads_table, {
            "id": thread_id,
            "name": name,
            "agent_id": agent_id,
            "network_id": network_id,
            "metadata": metadata or {},
        })

    def get_memory_thread(self, thread_id: str) -> Optional[Dict[str, Any]]:
        return self._get(memory_threads_table, thread_id)

    def list_memory_threads(
        self,
        agent_id: Optional[str] = None,
        network_id: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Most recently updated first."""
        return self._select(
            memory_threads_table,
            {"agent_id": agent_id, "network_id": network_id},
            order_by="updated_at", descending=True, limit=limit, offset=offset,
        )

    def update_memory_thread(self, thread_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update(memory_threads_table, thread_id, updates)

    def delete_memory_thread(self, thread_id: str) -> bool:
        """Delete a thread together with its messages and agent states."""
        def op(session):
            session.execute(delete(messages_table).where(messages_table.c.memory_thread_id == thread_id))
            session.execute(delete(agent_states_table).where(agent_states_table.c.memory_thread_id == thread_id))
            return session.execute(delete(memory_threads_table).where(memory_threads_table.c.id == thread_id)).rowcount > 0

        return self._run("delete memory thread", op)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def save_message(
        self,
        thread_id: str,
        role: str,
        content: str,
        tool_call_id: Optional[str] = None,
        tool_name: Optional[str] = None,
        token_count: Optional[int] = None,
        embedding_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Insert a message and touch the thread's ``updated_at``."""
        errors = []
        if not thread_id:
            errors.append("thread_id is required")
        if role not in ROLES:
            errors.append(f"role must be one of {', '.join(ROLES)}")
        if not isinstance(content, str):
            errors.append("content must be a string")
        if errors:
            raise ValidationError("Invalid message", errors)

        message = self._insert(messages_table, {
            "memory_thread_id": thread_id,
            "role": role,
            "content": content,
            "tool_call_id": tool_call_id,
            "tool_name": tool_name,
            "token_count": token_count,
            "embedding_id": embedding_id,
            "metadata": metadata or {},
        })
        self._update(memory_threads_table, thread_id, {})
        return message

    def load_messages(self, thread_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Messages oldest first (the first *limit* when given)."""
        return self._select(messages_table, {"memory_thread_id": thread_id}, order_by="created_at", limit=limit)

    def delete_message(self, message_id: str) -> bool:
        return self._delete(messages_table, message_id)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def save_embedding(self, vector: Sequence[float], model: Optional[str] = None) -> str:
        """Store *vector* as a float32 blob; returns the embedding id."""
        array = np.asarray(vector, dtype=np.float32)
        record = self._insert(embeddings_table, {
            "vector": array.tobytes(),
            "model": model,
            "dimensions": int(array.shape[0]),
        })
        return record["id"]

    def get_embedding(self, embedding_id: str) -> Optional[np.ndarray]:
        record = self._get(embeddings_table, embedding_id)
        if record is None:
            return None
        return np.frombuffer(record["vector"], dtype=np.float32)

    def delete_embedding(self, embedding_id: str) -> bool:
        return self._delete(embeddings_table, embedding_id)

    # ------------------------------------------------------------------
    # Agent states (composite key)
    # ------------------------------------------------------------------

    def save_agent_state(self, thread_id: str, agent_id: str, state: Dict[str, Any]) -> None:
        """Insert or replace the state of (thread, agent)."""
        if not thread_id or not agent_id:
            raise ValidationError("Invalid agent state", ["thread_id and agent_id are required"])
        if not isinstance(state, dict):
            raise ValidationError("Invalid agent state", ["state must be a dict"])
        pk = {"memory_thread_id": thread_id, "agent_id": agent_id}
        if self._update(agent_states_table, pk, {"state_data": state}) is None:
            self._insert(agent_states_table, {**pk, "state_data": state})

    def load_agent_state(self, thread_id: str, agent_id: str) -> Dict[str, Any]:
        """The stored state, or ``{}``."""
        record = self._get(agent_states_table, {"memory_thread_id": thread_id, "agent_id": agent_id})
        return record["state_data"] if record else {}

    def delete_agent_state(self, thread_id: str, agent_id: str) -> bool:
        return self._delete(agent_states_table, {"memory_thread_id": thread_id, "agent_id": agent_id})

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def create_workflow(self, name: str, status: str = "pending", description: Optional[str] = None,
                        metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._insert(sqlite_workflows_table, {
            "name": name, "status": status, "description": description,
            "current_step_index": 0, "metadata": metadata or {},
        })

    def get_workflow(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        return self._get(sqlite_workflows_table, workflow_id)

    def list_workflows(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._select(sqlite_workflows_table, {"status": status}, order_by="created_at", descending=True)

    def update_workflow(self, workflow_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update(sqlite_workflows_table, workflow_id, updates)

    def delete_workflow(self, workflow_id: str) -> bool:
        def op(session):
            session.execute(delete(sqlite_workflow_steps_table)
                            .where(sqlite_workflow_steps_table.c.workflow_id == workflow_id))
            return session.execute(delete(sqlite_workflows_table)
                                   .where(sqlite_workflows_table.c.id == workflow_id)).rowcount > 0

        return self._run("delete workflow", op)

    def add_workflow_step(self, workflow_id: str, agent_id: str, thread_id: str, input: Optional[str] = None,
                          status: str = "pending", metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._insert(sqlite_workflow_steps_table, {
            "workflow_id": workflow_id, "agent_id": agent_id, "thread_id": thread_id,
            "input": input, "status": status, "metadata": metadata or {},
        })

    def get_workflow_steps(self, workflow_id: str) -> List[Dict[str, Any]]:
        return self._select(sqlite_workflow_steps_table, {"workflow_id": workflow_id}, order_by="created_at")

    def update_workflow_step(self, step_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update(sqlite_workflow_steps_table, step_id, updates)

    # ------------------------------------------------------------------
    # GraphQL response cache
    # ------------------------------------------------------------------

    def cache_gql(self, query: str, variables: Optional[Dict[str, Any]], response: Any) -> Dict[str, Any]:
        return self._insert(gql_cache_table, {"query": query, "variables": variables or {}, "response": response})

    def get_cached_gql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """Newest cached response for (query, variables)."""
        rows = self._select(gql_cache_table, {"query": query, "variables": json.dumps(variables or {})},
                            order_by="created_at", descending=True, limit=1)
        return rows[0]["response"] if rows else None

    # ------------------------------------------------------------------
    # App builder
    # ------------------------------------------------------------------

    def create_app(self, app: Mapping[str, Any]) -> Dict[str, Any]:
        missing = [f"{k} is required" for k in ("name", "type", "code") if not app.get(k)]
        if missing:
            raise ValidationError("Invalid app", missing)
        return self._insert(apps_table, dict(app))

    def get_app(self, app_id: str) -> Optional[Dict[str, Any]]:
        return self._get(apps_table, app_id)

    def list_apps(self) -> List[Dict[str, Any]]:
        return self._select(apps_table, order_by="created_at", descending=True)

    def update_app(self, app_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update(apps_table, app_id, updates)

    def delete_app(self, app_id: str) -> bool:
        return self._delete(apps_table, app_id)

    def create_user(self, user: Mapping[str, Any]) -> Dict[str, Any]:
        """Insert a user; email is validated and lower-cased, role defaults to ``user``."""
        record = dict(user)
        record["email"] = validate_email(record.get("email"))
        record.setdefault("role", "user")
        if not record.get("password_hash"):
            raise ValidationError("Invalid user", ["password_hash is required"])
        return self._insert(users_table, record)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._get(users_table, user_id)

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        rows = self._select(users_table, {"email": validate_email(email)}, limit=1)
        return rows[0] if rows else None

    def list_users(self) -> List[Dict[str, Any]]:
        return self._select(users_table, order_by="created_at")

    def update_user(self, user_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        updates = dict(updates)
        if "email" in updates:
            updates["email"] = validate_email(updates["email"])
        return self._update(users_table, user_id, updates)

    def delete_user(self, user_id: str) -> bool:
        return self._delete(users_table, user_id)

    def create_integration(self, integration: Mapping[str, Any]) -> Dict[str, Any]:
        record = dict(integration)
        record.setdefault("status", "active")
        missing = [f"{k} is required" for k in ("user_id", "provider") if not record.get(k)]
        if missing:
            raise ValidationError("Invalid integration", missing)
        return self._insert(integrations_table, record)

    def get_integration(self, integration_id: str) -> Optional[Dict[str, Any]]:
        return self._get(integrations_table, integration_id)

    def list_integrations(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._select(integrations_table, {"user_id": user_id}, order_by="created_at")

    def update_integration(self, integration_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update(integrations_table, integration_id, updates)

    def delete_integration(self, integration_id: str) -> bool:
        return self._delete(integrations_table, integration_id)

    def create_code_block(self, block: Mapping[str, Any]) -> Dict[str, Any]:
        record = dict(block)
        record.setdefault("order", 0)
        missing = [f"{k} is required" for k in ("app_id", "language", "code") if not record.get(k)]
        if missing:
            raise ValidationError("Invalid code block", missing)
        return self._insert(app_code_blocks_table, record)

    def get_code_block(self, block_id: str) -> Optional[Dict[str, Any]]:
        return self._get(app_code_blocks_table, block_id)

    def list_code_blocks(self, app_id: str) -> List[Dict[str, Any]]:
        return self._select(app_code_blocks_table, {"app_id": app_id}, order_by="order")

    def update_code_block(self, block_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update(app_code_blocks_table, block_id, updates)

    def delete_code_block(self, block_id: str) -> bool:
        return self._delete(app_code_blocks_table, block_id)

    def create_file(self, file: Mapping[str, Any]) -> Dict[str, Any]:
        missing = [f"{k} is required" for k in ("app_id", "name", "type") if not file.get(k)]
        if missing:
            raise ValidationError("Invalid file", missing)
        return self._insert(files_table, dict(file))

    def get_file(self, file_id: str) -> Optional[Dict[str, Any]]:
        return self._get(files_table, file_id)

    def list_files(self, app_id: Optional[str] = None, parent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._select(files_table, {"app_id": app_id, "parent_id": parent_id}, order_by="name")

    def update_file(self, file_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update(files_table, file_id, updates)

    def delete_file(self, file_id: str) -> bool:
        return self._delete(files_table, file_id)

    def create_terminal_session(self, terminal: Mapping[str, Any]) -> Dict[str, Any]:
        record = dict(terminal)
        record.setdefault("status", "pending")
        missing = [f"{k} is required" for k in ("app_id", "user_id", "command") if not record.get(k)]
        if missing:
            raise ValidationError("Invalid terminal session", missing)
        return self._insert(terminal_sessions_table, record)

    def get_terminal_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._get(terminal_sessions_table, session_id)

    def list_terminal_sessions(self, app_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._select(terminal_sessions_table, {"app_id": app_id}, order_by="created_at")

    def update_terminal_session(self, session_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update(terminal_sessions_table, session_id, updates)

    def delete_terminal_session(self, session_id: str) -> bool:
        return self._delete(terminal_sessions_table, session_id)


_sqlite_crud: Optional[SQLiteCrud] = None


def get_sqlite_crud() -> SQLiteCrud:
    """Shared CRUD bound to the configured SQLite engine."""
    global _sqlite_crud
    if _sqlite_crud is None:
        _sqlite_crud = SQLiteCrud()
    return _sqlite_crud
