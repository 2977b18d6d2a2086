"""Prompt and reply handling for LLM node extraction.

The model is asked for a JSON object ``{"nodes": [...], "relationships": [...]}``.
Replies are cleaned of Markdown code fences, validated and normalized into
records that match the ``nodes``/``relationships`` tables.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from ..graph.sqlite_graph import NODE_TYPES, RELATIONS, normalize_division


class ExtractionError(ValueError):
    pass


@dataclass(frozen=True)
class Extraction:
    nodes: list[dict[str, Any]]
    relationships: list[dict[str, str]]


def build_extraction_prompt(*, question: str, answer: str, division: str) -> str:
    return (
        "Extract historical entities from this question. Return ONLY valid JSON.\n"
        "\n"
        f'Question: "{question}"\n'
        f'Answer: "{answer}"\n'
        f"Division: {division}\n"
        "\n"
        "Return format:\n"
        "{\n"
        '  "nodes": [\n'
        "    {\n"
        '      "name": "Reconstruction Acts",\n'
        '      "type": "event",\n'
        '      "division": "us_history",\n'
        '      "subdivision": "government"\n'
        "    }\n"
        "  ],\n"
        '  "relationships": [\n'
        "    {\n"
        '      "from": "Reconstruction Acts",\n'
        '      "to": "Radical Republicans",\n'
        '      "relation": "enacted_by"\n'
        "    }\n"
        "  ]\n"
        "}\n"
        "\n"
        f"Types: {', '.join(NODE_TYPES)}\n"
        f"Relations: {', '.join(RELATIONS)}"
    )


def node_id_for(name: str) -> str:
    # Stable id from the display name: "Radical Republicans" -> "radical_republicans".
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def parse_extraction(text: str, *, default_division: str) -> Extraction:
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ExtractionError(f"Reply is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ExtractionError("Reply must be a JSON object")
    raw_nodes = data.get("nodes")
    raw_rels = data.get("relationships", [])
    if not isinstance(raw_nodes, list) or not isinstance(raw_rels, list):
        raise ExtractionError("Reply needs 'nodes' and 'relationships' lists")

    fallback_division = normalize_division(default_division) if default_division else ""

    nodes: list[dict[str, Any]] = []
    names: dict[str, str] = {}
    for n in raw_nodes:
        if not isinstance(n, dict):
            raise ExtractionError(f"Node entry is not an object: {n!r}")
        name = str(n.get("name") or "").strip()
        if not name:
            raise ExtractionError(f"Node entry has no name: {n!r}")
        nid = node_id_for(name)
        if not nid:
            raise ExtractionError(f"Node name has no usable characters: {name!r}")
        if nid in names.values():
            continue

        ntype = str(n.get("type") or "").strip().lower()
        division = str(n.get("division") or "").strip()
        subdivision = n.get("subdivision")
        nodes.append(
            {
                "id": nid,
                "name": name,
                "type": ntype if ntype in NODE_TYPES else "concept",
                "division": normalize_division(division) if division else fallback_division,
                "subdivision": (str(subdivision).strip().lower() if subdivision else None),
            }
        )
        names[name.lower()] = nid

    relationships: list[dict[str, str]] = []
    for r in raw_rels:
        if not isinstance(r, dict):
            raise ExtractionError(f"Relationship entry is not an object: {r!r}")
        src = str(r.get("from") or "").strip()
        dst = str(r.get("to") or "").strip()
        if not src or not dst:
            raise ExtractionError(f"Relationship needs 'from' and 'to': {r!r}")
        relation = str(r.get("relation") or "").strip().lower()
        relationships.append(
            {
                "from": src,
                "to": dst,
                "from_node": names.get(src.lower(), node_id_for(src)),
                "to_node": names.get(dst.lower(), node_id_for(dst)),
                "relation": relation if relation in RELATIONS else "related_to",
            }
        )

    return Extraction(nodes=nodes, relationships=relationships)
