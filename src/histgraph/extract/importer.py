from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Iterable

from ..graph import sqlite_graph
from ..graph.sqlite_graph import Node
from ..graph.store import GraphStore


log = logging.getLogger(__name__)


def iter_extraction_files(root: Path) -> Iterable[Path]:
    if root.is_file():
        yield root
        return
    yield from sorted(root.glob("*.jsonl"))


def load_records(path: Path) -> list[dict[str, Any]]:
    records = []
    for n, line in enumerate(path.read_text(encoding="utf-8", errors="replace").splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            log.warning("Skipping %s line %d: %s", path.name, n, e)
    return records


def import_record(conn: sqlite3.Connection, record: dict[str, Any]) -> dict[str, int]:
    """Write one extraction record. Caller commits."""
    nodes_added = 0
    rels_added = 0
    links_added = 0

    question_id = str(record.get("question_id") or "")
    default_division = str(record.get("division") or "")

    known: set[str] = set()
    for n in record.get("nodes") or []:
        node = Node(
            id=str(n["id"]),
            name=n.get("name"),
            division=str(n.get("division") or default_division),
            subdivision=n.get("subdivision"),
            type=n.get("type"),
        )
        if sqlite_graph.insert_node(conn, node):
            nodes_added += 1
        known.add(node.id)
        if question_id and sqlite_graph.add_node_question(conn, node_id=node.id, question_id=question_id):
            links_added += 1

    for r in record.get("relationships") or []:
        src = str(r.get("from_node") or "")
        dst = str(r.get("to_node") or "")
        relation = str(r.get("relation") or "related_to")
        # Only link endpoints that exist, either in this record or from earlier imports.
        if src not in known and sqlite_graph.get_node(conn, src) is None:
            continue
        if dst not in known and sqlite_graph.get_node(conn, dst) is None:
            continue
        if sqlite_graph.relationship_exists(conn, from_node=src, to_node=dst, relation=relation):
            continue
        sqlite_graph.insert_relationship(conn, from_node=src, to_node=dst, relation=relation)
        rels_added += 1

    return {"nodes": nodes_added, "relationships": rels_added, "question_links": links_added}


async def import_extractions(*, store: GraphStore, input_path: Path) -> dict[str, int]:
    totals = {"files": 0, "records": 0, "nodes": 0, "relationships": 0, "question_links": 0}

    for path in iter_extraction_files(input_path):
        records = load_records(path)

        def _import(conn: sqlite3.Connection) -> dict[str, int]:
            counts = {"nodes": 0, "relationships": 0, "question_links": 0}
            for rec in records:
                for k, v in import_record(conn, rec).items():
                    counts[k] += v
            return counts

        counts = await store.run_in_transaction(_import)
        totals["files"] += 1
        totals["records"] += len(records)
        for k, v in counts.items():
            totals[k] += v
        log.info("Imported %s: %d record(s), %d new node(s)", path.name, len(records), counts["nodes"])

    return totals
