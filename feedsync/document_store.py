from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from feedsync.errors import DocumentNotFoundError

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[dict[str, Any] | None], None]
ErrorCallback = Callable[[Exception], None]


class DocumentStore(Protocol):
    def get_document(self, kind: str, doc_id: str) -> dict[str, Any] | None: ...

    def set_document(self, kind: str, doc_id: str, data: dict[str, Any]) -> None: ...

    def update_document(self, kind: str, doc_id: str, fields: dict[str, Any]) -> None: ...

    def subscribe_to_document(
        self,
        kind: str,
        doc_id: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]: ...


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def apply_field_updates(document: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``document`` with ``fields`` applied.

    Keys may be dotted paths (``"sync.status"``) addressing nested mappings;
    missing intermediate mappings are created. A plain key replaces the whole
    value, so ``{"events": {...}}`` swaps the event map wholesale.
    """
    updated = copy.deepcopy(document)
    for key, value in fields.items():
        *parents, leaf = str(key).split(".")
        target = updated
        for part in parents:
            node = target.get(part)
            if not isinstance(node, dict):
                node = {}
                target[part] = node
            target = node
        target[leaf] = copy.deepcopy(value)
    return updated


class SqliteDocumentStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._listeners: dict[tuple[str, str], list[tuple[ChangeCallback, ErrorCallback | None]]] = {}
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS documents (
            kind TEXT NOT NULL,
            doc_id TEXT NOT NULL,
            data_json TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (kind, doc_id)
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def _read(self, conn: sqlite3.Connection, kind: str, doc_id: str) -> dict[str, Any] | None:
        row = conn.execute(
            """
            SELECT data_json
            FROM documents
            WHERE kind = ? AND doc_id = ?
            """,
            (kind, doc_id),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["data_json"] or "{}")

    def _write(self, conn: sqlite3.Connection, kind: str, doc_id: str, data: dict[str, Any]) -> None:
        conn.execute(
            """
            INSERT INTO documents(kind, doc_id, data_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(kind, doc_id) DO UPDATE SET
                data_json = excluded.data_json,
                updated_at = excluded.updated_at
            """,
            (kind, doc_id, json.dumps(data, ensure_ascii=False), _utc_now()),
        )

    def get_document(self, kind: str, doc_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                return self._read(conn, str(kind), str(doc_id))

    def list_documents(self, kind: str) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT data_json
                    FROM documents
                    WHERE kind = ?
                    ORDER BY doc_id
                    """,
                    (str(kind),),
                ).fetchall()
        return [json.loads(row["data_json"] or "{}") for row in rows]

    def set_document(self, kind: str, doc_id: str, data: dict[str, Any]) -> None:
        with self._lock:
            with self._connect() as conn:
                self._write(conn, str(kind), str(doc_id), data)
                conn.commit()
            self._notify(str(kind), str(doc_id), data)

    def update_document(self, kind: str, doc_id: str, fields: dict[str, Any]) -> None:
        with self._lock:
            with self._connect() as conn:
                current = self._read(conn, str(kind), str(doc_id))
                if current is None:
                    raise DocumentNotFoundError(f"{kind}/{doc_id} does not exist")
                updated = apply_field_updates(current, fields)
                self._write(conn, str(kind), str(doc_id), updated)
                conn.commit()
            self._notify(str(kind), str(doc_id), updated)

    def delete_document(self, kind: str, doc_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM documents WHERE kind = ? AND doc_id = ?",
                    (str(kind), str(doc_id)),
                )
                conn.commit()
                deleted = cursor.rowcount > 0
            if deleted:
                self._notify(str(kind), str(doc_id), None)
        return deleted

    def subscribe_to_document(
        self,
        kind: str,
        doc_id: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        key = (str(kind), str(doc_id))
        entry = (on_change, on_error)
        with self._lock:
            self._listeners.setdefault(key, []).append(entry)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(key, [])
                if entry in listeners:
                    listeners.remove(entry)
                if not listeners:
                    self._listeners.pop(key, None)

        return unsubscribe

    def _notify(self, kind: str, doc_id: str, data: dict[str, Any] | None) -> None:
        for on_change, on_error in list(self._listeners.get((kind, doc_id), [])):
            snapshot = copy.deepcopy(data)
            try:
                on_change(snapshot)
            except Exception as exc:
                if on_error is None:
                    logger.exception("Change listener for %s/%s failed", kind, doc_id)
                    continue
                on_error(exc)
