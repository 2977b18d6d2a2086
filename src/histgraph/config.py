from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    # Default DB path used by the web API and CLI defaults.
    db_path: str = os.getenv("HISTGRAPH_DB_PATH", "./data/historybowl.db")

    # "anthropic" or "ollama"
    llm_provider: str = os.getenv("HISTGRAPH_LLM_PROVIDER", "anthropic")
    llm_timeout_s: float = float(os.getenv("HISTGRAPH_LLM_TIMEOUT_S", "120"))

    # Anthropic Messages API
    anthropic_api_key: str | None = os.getenv("ANTHROPIC_API_KEY")
    anthropic_base_url: str = os.getenv("HISTGRAPH_ANTHROPIC_BASE_URL", "https://api.anthropic.com")
    anthropic_model: str = os.getenv("HISTGRAPH_ANTHROPIC_MODEL", "claude-sonnet-4-20250514")

    # Ollama
    ollama_base_url: str = os.getenv("HISTGRAPH_OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_model: str = os.getenv("HISTGRAPH_OLLAMA_MODEL", "llama3.2:1b")

    # Pause between extraction requests.
    request_delay_s: float = float(os.getenv("HISTGRAPH_REQUEST_DELAY_S", "1.0"))
