from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable


SUPPORTED_EXTS = {".json", ".jsonl"}


@dataclass(frozen=True)
class Question:
    id: str
    question: str
    answer: str
    division: str
    quarter: str | None = None


def iter_bank_files(root: Path) -> Iterable[Path]:
    if root.is_file():
        yield root
        return
    for p in sorted(root.rglob("*")):
        if not p.is_file() or p.name.startswith("."):
            continue
        if p.suffix.lower() in SUPPORTED_EXTS:
            yield p


def load_questions(path: str | Path) -> list[Question]:
    """Load one question-bank file (.json list / {"questions": [...]} or .jsonl)."""
    p = Path(path)
    text = p.read_text(encoding="utf-8", errors="replace")

    if p.suffix.lower() == ".jsonl":
        rows = [json.loads(line) for line in text.splitlines() if line.strip()]
    else:
        data = json.loads(text)
        rows = data.get("questions", []) if isinstance(data, dict) else data

    out: list[Question] = []
    for i, row in enumerate(rows):
        q = _question_from_row(row, default_id=f"{p.stem}:{i}")
        if q is not None:
            out.append(q)
    return out


def _question_from_row(row: Any, *, default_id: str) -> Question | None:
    if not isinstance(row, dict):
        return None
    text = str(row.get("question") or "").strip()
    if not text:
        return None
    division = row.get("division") or row.get("category") or ""
    quarter = row.get("quarter")
    return Question(
        id=str(row.get("id") or default_id),
        question=text,
        answer=str(row.get("answer") or "").strip(),
        division=str(division).strip(),
        quarter=(str(quarter) if quarter is not None else None),
    )


def index_questions(paths: Iterable[Path]) -> dict[str, Question]:
    by_id: dict[str, Question] = {}
    for path in paths:
        for bank in iter_bank_files(path):
            for q in load_questions(bank):
                by_id[q.id] = q
    return by_id
