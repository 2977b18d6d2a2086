from __future__ import annotations

from typing import Iterable

from .llm import ChatClient, ChatMessage


SUMMARY_MAX_TOKENS = 500


def build_summary_prompt(node_name: str, questions: Iterable[str]) -> str:
    questions_text = "\n".join(q.strip() for q in questions if q and q.strip())
    return (
        f'Write a concise 2-3 paragraph summary about "{node_name}" for History Bowl study.\n'
        "Use these questions as context:\n"
        "\n"
        f"{questions_text or '(no linked questions)'}\n"
        "\n"
        "Focus on: what it was, when it happened, key people involved, historical significance.\n"
        "Write at high school level. Do not use bullet points."
    )


def generate_node_summary(*, llm: ChatClient, node_name: str, questions: Iterable[str]) -> str:
    prompt = build_summary_prompt(node_name, questions)
    text = llm.chat([ChatMessage(role="user", content=prompt)], max_tokens=SUMMARY_MAX_TOKENS)
    return text.strip()
