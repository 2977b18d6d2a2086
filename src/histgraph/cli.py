from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from .chat.llm import LLMError, make_client
from .chat.summary import generate_node_summary
from .config import Settings
from .extract.importer import import_extractions
from .extract.questions import index_questions
from .extract.runner import ExtractOptions, run_extraction
from .graph import MODES, GraphStore, Node, StorageUnavailable, UserProgress, sqlite_graph


app = typer.Typer(add_completion=False, help="History Bowl study graph: nodes, relationships and progress.")
console = Console()

T = TypeVar("T")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
    )


def _with_store(db: Path, fn: Callable[[GraphStore], Awaitable[T]]) -> T:
    async def _go() -> T:
        async with await GraphStore.open(db) as store:
            return await fn(store)

    try:
        return asyncio.run(_go())
    except StorageUnavailable as e:
        console.print(f"Unable to load/save progress: {e}", style="red")
        raise typer.Exit(code=2)


def _db_option() -> Any:
    return typer.Option(Path(Settings().db_path), "--db", help="SQLite DB path")


def _fmt_ms(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _node_table(title: str, nodes: list[Node]) -> Table:
    table = Table(title=title)
    table.add_column("id")
    table.add_column("name")
    table.add_column("type")
    table.add_column("subdivision")
    for n in nodes:
        table.add_row(Text(n.id), Text(n.name or ""), Text(n.type or ""), Text(n.subdivision or ""))
    return table


@app.command()
def init(db: Path = _db_option()):
    """Create (or upgrade) the graph DB."""

    async def _noop(store: GraphStore) -> None:
        return None

    _with_store(db, _noop)
    console.print(f"Graph store ready at {db} (schema v{sqlite_graph.SCHEMA_VERSION})")


@app.command("import")
def import_(
    input: Path = typer.Option(..., "--input", exists=True, help="Extraction JSONL file or directory"),
    db: Path = _db_option(),
):
    """Import extracted nodes/relationships into the graph DB."""
    res = _with_store(db, lambda store: import_extractions(store=store, input_path=input))
    for k, v in res.items():
        console.print(f"{k}: {v}", markup=False)


@app.command()
def nodes(
    division: str = typer.Argument(..., help='Division, e.g. "US History"'),
    db: Path = _db_option(),
):
    """List nodes in a division."""
    found = _with_store(db, lambda store: store.nodes_by_division(division))
    if not found:
        console.print(f"No nodes in division {sqlite_graph.normalize_division(division)!r}.", style="yellow")
        return
    console.print(_node_table(f"{len(found)} node(s) in {sqlite_graph.normalize_division(division)}", found))


@app.command()
def related(
    node_id: str = typer.Argument(...),
    db: Path = _db_option(),
):
    """List nodes related to a node (either direction)."""
    found = _with_store(db, lambda store: store.related_nodes(node_id))
    if not found:
        console.print(f"No related nodes for {node_id!r}.", style="yellow")
        return
    console.print(_node_table(f"Related to {node_id}", sorted(found, key=lambda n: n.id)))


def _print_progress(p: UserProgress) -> None:
    table = Table(title=f"Progress: {p.node_id}")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("stars", str(p.stars))
    table.add_row("platinum", "yes" if p.is_platinum() else "no")
    table.add_row("platinum_until", _fmt_ms(p.platinum_until))
    table.add_row("times_correct", str(p.times_correct))
    table.add_row("times_wrong", str(p.times_wrong))
    table.add_row("last_practiced", _fmt_ms(p.last_practiced))
    console.print(table)


@app.command()
def answer(
    node_id: str = typer.Argument(...),
    mode: str = typer.Option("initial", "--mode", help=f"One of: {', '.join(MODES)}"),
    correct: bool = typer.Option(True, "--correct/--wrong", help="Outcome of the quiz attempt"),
    db: Path = _db_option(),
):
    """Record a quiz answer for a node and show updated progress."""
    if mode not in MODES:
        raise typer.BadParameter(f"--mode must be one of: {', '.join(MODES)}")
    p = _with_store(db, lambda store: store.update_progress(node_id, correct, mode))
    _print_progress(p)


@app.command()
def progress(
    node_id: str = typer.Argument(...),
    db: Path = _db_option(),
):
    """Show stored progress for a node."""
    p = _with_store(db, lambda store: store.get_progress(node_id))
    if p is None:
        console.print(f"No progress recorded for {node_id!r}.", style="yellow")
        raise typer.Exit(code=2)
    _print_progress(p)


@app.command()
def stats(
    division: str | None = typer.Option(None, "--division", help="Limit to one division"),
    db: Path = _db_option(),
):
    """Show mastery stats (stars and active platinum)."""
    res = _with_store(db, lambda store: store.mastery_stats(division))

    table = Table(title=f"Mastery ({res['division'] or 'all divisions'})")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Nodes", str(res["nodes"]))
    for stars, n in sorted(res["by_stars"].items()):
        table.add_row(f"{stars} star(s)", str(n))
    table.add_row("Platinum (active)", str(res["platinum"]))
    console.print(table)


@app.command()
def extract(
    input: Path = typer.Option(..., "--input", exists=True, help="Question-bank file or directory"),
    out: Path = typer.Option(Path("./data/extracted"), "--out", file_okay=False, help="Output directory"),
    provider: str | None = typer.Option(None, "--provider", help="anthropic or ollama"),
    model: str | None = typer.Option(None, "--model", help="Model name"),
    delay: float | None = typer.Option(None, "--delay", help="Seconds between requests"),
    resume: bool = typer.Option(True, "--resume/--no-resume", help="Skip questions already extracted"),
    limit: int | None = typer.Option(None, "--limit", help="Stop after this many requests"),
):
    """Extract graph nodes/relationships from question banks with an LLM."""
    settings = Settings()
    try:
        llm = make_client(settings, provider=provider, model=model)
    except LLMError as e:
        console.print(str(e), style="red")
        raise typer.Exit(code=2)

    opts = ExtractOptions(
        input_path=input,
        out_dir=out,
        request_delay_s=float(delay if delay is not None else settings.request_delay_s),
        resume=resume,
        limit=limit,
    )
    res = run_extraction(llm=llm, options=opts)

    for k, v in res.items():
        console.print(f"{k}: {v}", markup=False)
    console.print(f"Next: run `histgraph import --input {out}` to load the results.")


@app.command()
def summarize(
    node_id: str = typer.Argument(...),
    questions: list[Path] = typer.Option(..., "--questions", exists=True, help="Question-bank file(s)/dir(s)"),
    db: Path = _db_option(),
    provider: str | None = typer.Option(None, "--provider", help="anthropic or ollama"),
    model: str | None = typer.Option(None, "--model", help="Model name"),
    save: bool = typer.Option(True, "--save/--no-save", help="Store the summary on the node"),
):
    """Write a study summary for a node from its linked questions."""
    settings = Settings()
    bank = index_questions(questions)

    async def _lookup(store: GraphStore) -> tuple[Node | None, list[str]]:
        return await store.get_node(node_id), await store.questions_for_node(node_id)

    node, qids = _with_store(db, _lookup)
    if node is None:
        console.print(f"Unknown node {node_id!r}.", style="red")
        raise typer.Exit(code=2)

    texts = [bank[q].question for q in qids if q in bank]
    try:
        llm = make_client(settings, provider=provider, model=model)
        summary = generate_node_summary(llm=llm, node_name=node.name or node.id, questions=texts)
    except LLMError as e:
        console.print(str(e), style="red")
        raise typer.Exit(code=2)

    console.print(summary, markup=False)
    if save:
        _with_store(db, lambda store: store.set_node_summary(node.id, summary))


@app.command()
def serve(
    db: Path = _db_option(),
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
):
    """Run the JSON API used by the study UI (FastAPI)."""
    try:
        import uvicorn
    except ImportError:
        console.print("Missing web dependencies. Install: `pip install -e '.[web]'`", style="red")
        raise typer.Exit(code=2)

    from .web.server import create_app

    uvicorn.run(create_app(db_path=str(db)), host=host, port=int(port))


@app.command()
def doctor(
    db: Path | None = typer.Option(None, "--db", help="Optional DB path to check"),
    provider: str | None = typer.Option(None, "--provider", help="anthropic or ollama"),
):
    """Check the DB and LLM configuration and print actionable fixes."""
    settings = Settings()
    provider = (provider or settings.llm_provider).lower()
    ok = True

    console.print(f"LLM ({provider}):")
    if provider == "anthropic":
        if settings.anthropic_api_key:
            console.print(f"- API key set; model {settings.anthropic_model}", style="green")
        else:
            console.print("- ANTHROPIC_API_KEY is not set.", style="red")
            console.print("  Fix: export ANTHROPIC_API_KEY=... (or add it to .env)", style="yellow")
            ok = False
    else:
        url = settings.ollama_base_url.rstrip("/")
        try:
            r = httpx.get(f"{url}/api/tags", timeout=5.0)
            r.raise_for_status()
            models = [m.get("name") for m in (r.json().get("models") or []) if isinstance(m, dict)]
            if settings.ollama_model in models:
                console.print(f"- Model OK: {settings.ollama_model}", style="green")
            else:
                console.print(f"- Missing model: {settings.ollama_model}", style="yellow")
                console.print(f"  Fix: `ollama pull {settings.ollama_model}`", style="yellow")
                ok = False
        except httpx.HTTPError as e:
            console.print(f"- Not reachable at {url}: {e}", style="red")
            console.print("  Fix: start Ollama (`ollama serve`) then retry.", style="yellow")
            ok = False

    if db is not None:
        console.print("\nDB:")
        if not db.exists():
            console.print(f"- Missing DB: {db}", style="red")
            console.print("  Fix: run `histgraph init --db ...`", style="yellow")
            ok = False
        else:
            res = _with_store(db, lambda store: store.mastery_stats())
            console.print(f"- Nodes: {res['nodes']}", style="green" if res["nodes"] else "yellow")
            if not res["nodes"]:
                console.print("  Fix: run `histgraph extract` then `histgraph import`.", style="yellow")
                ok = False

    if not ok:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
