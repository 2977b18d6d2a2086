from __future__ import annotations

import json
import os
import re
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from .progress import UserProgress


SCHEMA_VERSION = 1

NODE_TYPES = ("person", "event", "place", "concept")
RELATIONS = ("caused", "opposed", "led", "enacted_by", "occurred_in", "related_to")


@dataclass(frozen=True)
class Node:
    id: str
    division: str
    subdivision: str | None = None
    type: str | None = None
    name: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "division": self.division,
            "subdivision": self.subdivision,
            "type": self.type,
            **({"data": dict(self.data)} if self.data else {}),
        }


@dataclass(frozen=True)
class Relationship:
    id: int
    from_node: str
    to_node: str
    relation: str


def normalize_division(division: str) -> str:
    # "US History", "us_history" and "US   history" all map to "us_history".
    return re.sub(r"\s+", "_", division.strip().lower())


def connect(db_path: str | os.PathLike[str]) -> sqlite3.Connection:
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    # The connection is handed to worker threads by GraphStore, which serializes access.
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def init_graph(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
          key TEXT PRIMARY KEY,
          value TEXT NOT NULL
        );
        """
    )
    stored = get_schema_version(conn)
    if stored is not None and stored > SCHEMA_VERSION:
        raise sqlite3.DatabaseError(
            f"Database schema v{stored} is newer than supported v{SCHEMA_VERSION}"
        )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS nodes (
          id TEXT PRIMARY KEY,
          name TEXT,
          division TEXT NOT NULL,
          subdivision TEXT,
          type TEXT,
          data_json TEXT NOT NULL DEFAULT '{}'
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_nodes_division ON nodes(division);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_nodes_subdivision ON nodes(subdivision);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_nodes_type ON nodes(type);")

    # Endpoints are not foreign keys: readers tolerate dangling references.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS relationships (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          from_node TEXT NOT NULL,
          to_node TEXT NOT NULL,
          relation TEXT NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_relationships_from ON relationships(from_node);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_relationships_to ON relationships(to_node);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS node_questions (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          node_id TEXT NOT NULL,
          question_id TEXT NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_node_questions_node ON node_questions(node_id);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_node_questions_question ON node_questions(question_id);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_progress (
          node_id TEXT PRIMARY KEY,
          stars INTEGER NOT NULL DEFAULT 0,
          platinum_until INTEGER,
          times_correct INTEGER NOT NULL DEFAULT 0,
          times_wrong INTEGER NOT NULL DEFAULT 0,
          last_practiced INTEGER
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS wrong_answers (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          payload_json TEXT NOT NULL,
          created_at INTEGER NOT NULL
        );
        """
    )

    conn.execute(
        "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
        ("schema_version", str(SCHEMA_VERSION)),
    )
    conn.commit()


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
    return int(row["value"]) if row is not None else None


def node_from_row(row: sqlite3.Row) -> Node:
    return Node(
        id=str(row["id"]),
        division=str(row["division"]),
        subdivision=row["subdivision"],
        type=row["type"],
        name=row["name"],
        data=json.loads(row["data_json"] or "{}"),
    )


def insert_node(conn: sqlite3.Connection, node: Node) -> bool:
    """Insert ``node`` unless its id is taken. Returns True when inserted."""
    cur = conn.execute(
        """
        INSERT INTO nodes(id, name, division, subdivision, type, data_json)
        VALUES(?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO NOTHING
        """,
        (
            node.id,
            node.name,
            normalize_division(node.division),
            node.subdivision,
            node.type,
            json.dumps(node.data, ensure_ascii=True),
        ),
    )
    return cur.rowcount == 1


def get_node(conn: sqlite3.Connection, node_id: str) -> Node | None:
    row = conn.execute(
        "SELECT id, name, division, subdivision, type, data_json FROM nodes WHERE id = ?",
        (str(node_id),),
    ).fetchone()
    return node_from_row(row) if row is not None else None


def get_nodes_by_division(conn: sqlite3.Connection, division_key: str) -> list[Node]:
    rows = conn.execute(
        "SELECT id, name, division, subdivision, type, data_json FROM nodes WHERE division = ? ORDER BY id",
        (division_key,),
    ).fetchall()
    return [node_from_row(r) for r in rows]


def update_node_data(conn: sqlite3.Connection, node_id: str, updates: dict[str, Any]) -> bool:
    node = get_node(conn, node_id)
    if node is None:
        return False
    data = {**node.data, **updates}
    conn.execute(
        "UPDATE nodes SET data_json = ? WHERE id = ?",
        (json.dumps(data, ensure_ascii=True), node.id),
    )
    return True


def insert_relationship(conn: sqlite3.Connection, *, from_node: str, to_node: str, relation: str) -> int:
    cur = conn.execute(
        "INSERT INTO relationships(from_node, to_node, relation) VALUES(?, ?, ?)",
        (str(from_node), str(to_node), str(relation)),
    )
    return int(cur.lastrowid)


def relationship_exists(conn: sqlite3.Connection, *, from_node: str, to_node: str, relation: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM relationships WHERE from_node = ? AND to_node = ? AND relation = ? LIMIT 1",
        (str(from_node), str(to_node), str(relation)),
    ).fetchone()
    return row is not None


def get_relationships_from(conn: sqlite3.Connection, node_id: str) -> list[Relationship]:
    rows = conn.execute(
        "SELECT id, from_node, to_node, relation FROM relationships WHERE from_node = ? ORDER BY id",
        (str(node_id),),
    ).fetchall()
    return [_rel_from_row(r) for r in rows]


def get_relationships_to(conn: sqlite3.Connection, node_id: str) -> list[Relationship]:
    rows = conn.execute(
        "SELECT id, from_node, to_node, relation FROM relationships WHERE to_node = ? ORDER BY id",
        (str(node_id),),
    ).fetchall()
    return [_rel_from_row(r) for r in rows]


def _rel_from_row(row: sqlite3.Row) -> Relationship:
    return Relationship(
        id=int(row["id"]),
        from_node=str(row["from_node"]),
        to_node=str(row["to_node"]),
        relation=str(row["relation"]),
    )


def add_node_question(conn: sqlite3.Connection, *, node_id: str, question_id: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM node_questions WHERE node_id = ? AND question_id = ? LIMIT 1",
        (str(node_id), str(question_id)),
    ).fetchone()
    if row is not None:
        return False
    conn.execute(
        "INSERT INTO node_questions(node_id, question_id) VALUES(?, ?)",
        (str(node_id), str(question_id)),
    )
    return True


def get_question_ids_for_node(conn: sqlite3.Connection, node_id: str) -> list[str]:
    rows = conn.execute(
        "SELECT question_id FROM node_questions WHERE node_id = ? ORDER BY id",
        (str(node_id),),
    ).fetchall()
    return [str(r["question_id"]) for r in rows]


def get_node_ids_for_question(conn: sqlite3.Connection, question_id: str) -> list[str]:
    rows = conn.execute(
        "SELECT node_id FROM node_questions WHERE question_id = ? ORDER BY id",
        (str(question_id),),
    ).fetchall()
    return [str(r["node_id"]) for r in rows]


def get_progress(conn: sqlite3.Connection, node_id: str) -> UserProgress | None:
    row = conn.execute(
        """
        SELECT node_id, stars, platinum_until, times_correct, times_wrong, last_practiced
        FROM user_progress WHERE node_id = ?
        """,
        (str(node_id),),
    ).fetchone()
    if row is None:
        return None
    return UserProgress(
        node_id=str(row["node_id"]),
        stars=int(row["stars"]),
        platinum_until=(int(row["platinum_until"]) if row["platinum_until"] is not None else None),
        times_correct=int(row["times_correct"]),
        times_wrong=int(row["times_wrong"]),
        last_practiced=(int(row["last_practiced"]) if row["last_practiced"] is not None else None),
    )


def put_progress(conn: sqlite3.Connection, progress: UserProgress) -> None:
    conn.execute(
        """
        INSERT OR REPLACE INTO user_progress(
          node_id, stars, platinum_until, times_correct, times_wrong, last_practiced
        ) VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            progress.node_id,
            int(progress.stars),
            progress.platinum_until,
            int(progress.times_correct),
            int(progress.times_wrong),
            progress.last_practiced,
        ),
    )


def insert_wrong_answer(conn: sqlite3.Connection, payload: dict[str, Any], *, created_at: int) -> int:
    cur = conn.execute(
        "INSERT INTO wrong_answers(payload_json, created_at) VALUES(?, ?)",
        (json.dumps(payload, ensure_ascii=True), int(created_at)),
    )
    return int(cur.lastrowid)


def get_wrong_answers(conn: sqlite3.Connection, *, limit: int = 50) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT id, payload_json, created_at FROM wrong_answers ORDER BY id DESC LIMIT ?",
        (int(limit),),
    ).fetchall()
    return [
        # Row id and timestamp win over same-named payload keys.
        {**json.loads(r["payload_json"]), "id": int(r["id"]), "created_at": int(r["created_at"])}
        for r in rows
    ]


def count_stars(conn: sqlite3.Connection, *, division_key: str | None, at_ms: int) -> dict[str, Any]:
    where = "WHERE n.division = ?" if division_key is not None else ""
    params: Iterable[Any] = (at_ms,) + ((division_key,) if division_key is not None else ())
    rows = conn.execute(
        f"""
        SELECT COALESCE(p.stars, 0) AS stars,
               COUNT(*) AS n,
               SUM(CASE WHEN p.platinum_until > ? THEN 1 ELSE 0 END) AS platinum
        FROM nodes n
        LEFT JOIN user_progress p ON p.node_id = n.id
        {where}
        GROUP BY COALESCE(p.stars, 0)
        """,
        tuple(params),
    ).fetchall()

    by_stars = {s: 0 for s in range(4)}
    platinum = 0
    for r in rows:
        by_stars[int(r["stars"])] = int(r["n"])
        platinum += int(r["platinum"] or 0)
    return {
        "nodes": sum(by_stars.values()),
        "by_stars": by_stars,
        "platinum": platinum,
    }
