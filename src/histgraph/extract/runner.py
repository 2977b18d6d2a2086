from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from ..chat.llm import ChatClient, ChatMessage, LLMError
from .parse import ExtractionError, build_extraction_prompt, parse_extraction
from .questions import Question, iter_bank_files, load_questions


log = logging.getLogger(__name__)

EXTRACTION_MAX_TOKENS = 1000


@dataclass(frozen=True)
class ExtractOptions:
    input_path: Path
    out_dir: Path
    request_delay_s: float = 1.0
    resume: bool = True
    limit: int | None = None


def output_path_for(bank: Path, out_dir: Path) -> Path:
    return out_dir / f"{bank.stem}.nodes.jsonl"


def extract_question(llm: ChatClient, q: Question) -> dict[str, Any]:
    """Run one question through the LLM and return its output record.

    Raises ExtractionError / LLMError when the reply cannot be used.
    """
    prompt = build_extraction_prompt(question=q.question, answer=q.answer, division=q.division)
    reply = llm.chat([ChatMessage(role="user", content=prompt)], max_tokens=EXTRACTION_MAX_TOKENS)
    ext = parse_extraction(reply, default_division=q.division)
    return {
        "question_id": q.id,
        "division": q.division,
        "quarter": q.quarter,
        "nodes": ext.nodes,
        "relationships": ext.relationships,
    }


def run_extraction(
    *,
    llm: ChatClient,
    options: ExtractOptions,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    options.out_dir.mkdir(parents=True, exist_ok=True)

    questions_seen = 0
    extracted = 0
    skipped_existing = 0
    failed = 0
    requests_made = 0

    for bank in iter_bank_files(options.input_path):
        if options.limit is not None and requests_made >= options.limit:
            break
        out_path = output_path_for(bank, options.out_dir)
        done = _done_question_ids(out_path) if options.resume else set()
        mode = "a" if options.resume else "w"

        with out_path.open(mode, encoding="utf-8") as f:
            for q in load_questions(bank):
                if options.limit is not None and requests_made >= options.limit:
                    break
                questions_seen += 1
                if q.id in done:
                    skipped_existing += 1
                    continue

                if requests_made > 0 and options.request_delay_s > 0:
                    sleep(options.request_delay_s)
                requests_made += 1

                try:
                    record = extract_question(llm, q)
                except (ExtractionError, LLMError) as e:
                    failed += 1
                    log.warning("Skipping question %s from %s: %s", q.id, bank.name, e)
                    continue

                f.write(json.dumps(record, ensure_ascii=False) + "\n")
                f.flush()
                extracted += 1
                log.debug("Extracted %d node(s) from question %s", len(record["nodes"]), q.id)

    return {
        "questions_seen": questions_seen,
        "extracted": extracted,
        "skipped_existing": skipped_existing,
        "failed": failed,
    }


def _done_question_ids(path: Path) -> set[str]:
    if not path.exists():
        return set()
    done: set[str] = set()
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            done.add(str(json.loads(line)["question_id"]))
        except (json.JSONDecodeError, KeyError, TypeError):
            log.warning("Ignoring unreadable line in %s", path)
    return done
