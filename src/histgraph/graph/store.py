"""Async facade over the SQLite graph.

``GraphStore`` owns one connection for its whole lifecycle (``open`` ..
``close``). Blocking SQLite calls run in a worker thread, one at a time, and
every SQLite failure surfaces as ``StorageUnavailable``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import threading
from typing import Any, Callable, TypeVar

from . import sqlite_graph
from .progress import UserProgress, apply_answer, now_ms, validate_mode
from .sqlite_graph import Node, normalize_division


log = logging.getLogger(__name__)

T = TypeVar("T")

ProgressListener = Callable[[UserProgress], None]


class StorageUnavailable(RuntimeError):
    pass


class GraphStore:
    def __init__(self, conn: sqlite3.Connection, *, clock: Callable[[], int] = now_ms):
        self._conn = conn
        self._clock = clock
        self._conn_lock = threading.Lock()
        self._node_locks: dict[str, asyncio.Lock] = {}
        self._node_lock_users: dict[str, int] = {}
        self._listeners: list[ProgressListener] = []

    @classmethod
    async def open(
        cls,
        db_path: str | os.PathLike[str],
        *,
        clock: Callable[[], int] = now_ms,
    ) -> GraphStore:
        """Open (creating if needed) the store at ``db_path`` and ensure the schema."""

        def _open() -> sqlite3.Connection:
            conn = sqlite_graph.connect(db_path)
            try:
                sqlite_graph.init_graph(conn)
            except BaseException:
                conn.close()
                raise
            return conn

        try:
            conn = await asyncio.to_thread(_open)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open graph store at {db_path}: {e}") from e

        log.debug("Opened graph store at %s (schema v%s)", db_path, sqlite_graph.SCHEMA_VERSION)
        return cls(conn, clock=clock)

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)

    async def __aenter__(self) -> GraphStore:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _run(self, fn: Callable[[sqlite3.Connection], T], *, write: bool = False) -> T:
        def _call() -> T:
            with self._conn_lock:
                if not write:
                    return fn(self._conn)
                # Commits on success, rolls back on error.
                with self._conn:
                    return fn(self._conn)

        try:
            return await asyncio.to_thread(_call)
        except sqlite3.Error as e:
            raise StorageUnavailable(str(e)) from e

    # -- core operations ---------------------------------------------------

    async def nodes_by_division(self, division: str) -> list[Node]:
        key = normalize_division(division)
        return await self._run(lambda c: sqlite_graph.get_nodes_by_division(c, key))

    async def related_nodes(self, node_id: str) -> list[Node]:
        """Nodes on the other end of any relationship touching ``node_id``.

        Edges are followed in both directions. Each neighbor appears once;
        neighbors that no longer exist are skipped.
        """

        def _related(c: sqlite3.Connection) -> list[Node]:
            outgoing = sqlite_graph.get_relationships_from(c, node_id)
            incoming = sqlite_graph.get_relationships_to(c, node_id)

            related_ids = {r.to_node for r in outgoing} | {r.from_node for r in incoming}
            out: list[Node] = []
            for rid in related_ids:
                node = sqlite_graph.get_node(c, rid)
                if node is not None:
                    out.append(node)
            return out

        return await self._run(_related)

    async def update_progress(self, node_id: str, correct: bool, mode: str) -> UserProgress:
        validate_mode(mode)

        def _update(c: sqlite3.Connection) -> UserProgress:
            current = sqlite_graph.get_progress(c, node_id) or UserProgress(node_id=str(node_id))
            updated = apply_answer(current, correct=bool(correct), mode=mode, at_ms=self._clock())
            sqlite_graph.put_progress(c, updated)
            return updated

        key = str(node_id)
        lock = self._node_locks.setdefault(key, asyncio.Lock())
        self._node_lock_users[key] = self._node_lock_users.get(key, 0) + 1
        try:
            async with lock:
                progress = await self._run(_update, write=True)
        finally:
            # Drop the lock once no caller holds or waits on it.
            self._node_lock_users[key] -= 1
            if not self._node_lock_users[key]:
                del self._node_lock_users[key]
                del self._node_locks[key]

        for listener in list(self._listeners):
            try:
                listener(progress)
            except Exception:
                log.exception("Progress listener %r failed for node %s", listener, progress.node_id)
        return progress

    # -- progress ----------------------------------------------------------

    def add_progress_listener(self, listener: ProgressListener) -> None:
        """Call ``listener`` with the new record after every successful progress update."""
        self._listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        self._listeners.remove(listener)

    async def get_progress(self, node_id: str) -> UserProgress | None:
        return await self._run(lambda c: sqlite_graph.get_progress(c, node_id))

    async def mastery_stats(self, division: str | None = None) -> dict[str, Any]:
        key = normalize_division(division) if division else None
        at = self._clock()
        stats = await self._run(lambda c: sqlite_graph.count_stars(c, division_key=key, at_ms=at))
        return {"division": key, **stats}

    async def record_wrong_answer(self, payload: dict[str, Any]) -> int:
        at = self._clock()
        return await self._run(
            lambda c: sqlite_graph.insert_wrong_answer(c, dict(payload), created_at=at),
            write=True,
        )

    async def wrong_answers(self, limit: int = 50) -> list[dict[str, Any]]:
        return await self._run(lambda c: sqlite_graph.get_wrong_answers(c, limit=limit))

    # -- graph writes ------------------------------------------------------

    async def add_node(self, node: Node) -> bool:
        return await self._run(lambda c: sqlite_graph.insert_node(c, node), write=True)

    async def get_node(self, node_id: str) -> Node | None:
        return await self._run(lambda c: sqlite_graph.get_node(c, node_id))

    async def add_relationship(self, from_node: str, to_node: str, relation: str) -> int:
        return await self._run(
            lambda c: sqlite_graph.insert_relationship(c, from_node=from_node, to_node=to_node, relation=relation),
            write=True,
        )

    async def link_question(self, node_id: str, question_id: str) -> bool:
        return await self._run(
            lambda c: sqlite_graph.add_node_question(c, node_id=node_id, question_id=question_id),
            write=True,
        )

    async def questions_for_node(self, node_id: str) -> list[str]:
        return await self._run(lambda c: sqlite_graph.get_question_ids_for_node(c, node_id))

    async def nodes_for_question(self, question_id: str) -> list[str]:
        return await self._run(lambda c: sqlite_graph.get_node_ids_for_question(c, question_id))

    async def set_node_summary(self, node_id: str, summary: str) -> bool:
        return await self._run(
            lambda c: sqlite_graph.update_node_data(c, node_id, {"summary": summary}),
            write=True,
        )

    async def run_in_transaction(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run a batch of ``sqlite_graph`` calls as one committed transaction."""
        return await self._run(fn, write=True)
