"""
Study Notebook RAG - CLI Entry Point
-------------------------------------
Exposes Typer commands for each engine operation.

Usage:
    python -m src.main add-resource "Linear Algebra notes" --file notes.md --subject la-101
    python -m src.main resources --subject la-101
    python -m src.main ingest <resource_id>
    python -m src.main query                         # Interactive Q&A
    python -m src.main query -q "..." --subject la-101
    python -m src.main query -q "..." --json
    python -m src.main summary <resource_id> --depth advanced
    python -m src.main stats --user alice
    python -m src.main health
"""
from __future__ import annotations

import sys

# Windows cp1252 terminal fix: force UTF-8 so resource text with
# symbols does not crash the Rich console renderer.
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

import json
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from src.config import AppConfig, load_config
from src.exceptions import RAGError
from src.schemas import QueryOptions, QueryResult, Resource, SummaryResult
from src.utils.logger import setup_logger

app = typer.Typer(
    name="notebook-rag",
    help="Study Notebook RAG - ingest resources and ask grounded questions",
    add_completion=False,
)
console = Console()

ConfigOption = typer.Option(
    "config/config.yaml", "--config", "-c", help="Path to config YAML"
)


# --- Helpers ------------------------------------------------------------------

def _setup(config_path: str) -> AppConfig:
    config = load_config(config_path)
    setup_logger(log_level=config.logging.level, log_file=config.logging.file)
    return config


def _open_pipeline(config: AppConfig):
    from src.serving.pipeline import RAGPipeline

    try:
        with console.status("[cyan]Starting pipeline...[/cyan]"):
            return RAGPipeline.from_config(config)
    except RAGError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)


def _fail(exc: Exception) -> None:
    console.print(f"[red]{exc}[/red]")
    raise typer.Exit(1)


# --- Commands -----------------------------------------------------------------

@app.command("add-resource")
def add_resource(
    title: str = typer.Argument(..., help="Resource title"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Text file with the content"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Short abstract"),
    subject: Optional[str] = typer.Option(None, "--subject", "-s", help="Subject id"),
    resource_id: Optional[str] = typer.Option(None, "--id", help="Explicit resource id"),
    config: str = ConfigOption,
) -> None:
    """Register a resource in the catalog (does not index it)."""
    cfg = _setup(config)
    from src.storage.catalog import create_storage

    catalog, _, _ = create_storage(cfg)
    content = file.read_text(encoding="utf-8") if file else None
    fields = {"title": title, "subject_id": subject, "description": description, "content": content}
    if resource_id:
        fields["id"] = resource_id
    resource = catalog.save(Resource(**fields))

    console.print(f"[green][OK] Resource added[/green] | id=[bold]{resource.id}[/bold]")
    console.print(f"[dim]Index it with: python -m src.main ingest {resource.id}[/dim]")


@app.command("resources")
def list_resources(
    subject: Optional[str] = typer.Option(None, "--subject", "-s", help="Only this subject"),
    config: str = ConfigOption,
) -> None:
    """List catalogued resources with their indexing status."""
    cfg = _setup(config)
    from src.storage.catalog import create_storage

    catalog, _, _ = create_storage(cfg)
    resources = catalog.list_resources(subject_id=subject)
    if not resources:
        console.print("[yellow]No resources found.[/yellow]")
        return

    table = Table("Id", "Title", "Subject", "Status", "Chunks", box=box.SIMPLE, header_style="bold dim")
    for r in resources:
        table.add_row(r.id, r.title, r.subject_id or "-", r.status.value, str(r.chunk_count))
    console.print(table)


@app.command()
def ingest(
    resource_id: str = typer.Argument(..., help="Resource id to (re)index"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Index this text instead"),
    config: str = ConfigOption,
) -> None:
    """
    Chunk, embed and store a resource, replacing its previous chunks.

    \b
    Steps:
      1. Chunk (paragraph -> sentence -> word windows with overlap)
      2. Batch embed (cache first)
      3. Store in the configured vector store
      4. Mark the resource as indexed
    """
    cfg = _setup(config)
    pipeline = _open_pipeline(cfg)
    content = file.read_text(encoding="utf-8") if file else None

    with pipeline:
        try:
            with console.status(f"[cyan]Ingesting {resource_id}...[/cyan]"):
                result = pipeline.ingest_resource(resource_id, content)
        except RAGError as exc:
            _fail(exc)

    if result.chunks_created == 0:
        console.print("[yellow]Insufficient content - nothing was indexed.[/yellow]")
        return
    console.print(
        f"[green][OK] Indexed[/green] | chunks={result.chunks_created} "
        f"| tokens={result.tokens_used}"
    )


@app.command()
def query(
    question: Optional[str] = typer.Option(
        None, "--query", "-q", help="Single query (omit for interactive loop)"
    ),
    subject: Optional[str] = typer.Option(None, "--subject", "-s", help="Restrict to a subject"),
    resource: Optional[list[str]] = typer.Option(
        None, "--resource", "-r", help="Restrict to resource ids (repeatable)"
    ),
    top_k: Optional[int] = typer.Option(None, "--top-k", help="Chunks to retrieve"),
    min_score: Optional[float] = typer.Option(None, "--min-score", help="Similarity threshold"),
    style: str = typer.Option("balanced", "--style", help="formal | practical | balanced"),
    depth: str = typer.Option("intermediate", "--depth", help="basic | intermediate | advanced"),
    language: str = typer.Option("en", "--language", help="Answer language"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Skip the answer cache"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id for the query log"),
    json_out: bool = typer.Option(
        False, "--json", help="Print result as JSON (single-query mode only)"
    ),
    config: str = ConfigOption,
) -> None:
    """Ask grounded questions against the indexed resources."""
    cfg = _setup(config)
    options = QueryOptions(
        resource_ids=resource or None,
        subject_id=subject,
        top_k=top_k if top_k is not None else cfg.retrieval.top_k,
        min_score=min_score if min_score is not None else cfg.retrieval.min_score,
        style=style,
        depth=depth,
        language=language,
        skip_cache=no_cache,
    )
    pipeline = _open_pipeline(cfg)

    with pipeline:
        # --- Single-shot mode -------------------------------------------------
        if question:
            try:
                result = pipeline.query(question, options, user_id=user)
            except RAGError as exc:
                _fail(exc)
            if json_out:
                console.print_json(result.model_dump_json())
            else:
                _print_result(result)
            return

        # --- Interactive loop -------------------------------------------------
        console.print()
        console.print(
            Panel(
                "[bold cyan]Study Notebook RAG[/bold cyan]\n"
                "[white]Ask anything about your indexed resources[/white]",
                box=box.DOUBLE_EDGE,
                expand=False,
            )
        )
        console.print("[dim]Type 'exit', 'quit', or press Ctrl+C to quit.[/dim]\n")

        while True:
            try:
                raw = console.input("[bold cyan]You[/bold cyan] > ").strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye.[/dim]")
                break

            if not raw:
                continue
            if raw.lower() in {"exit", "quit", "q"}:
                console.print("[dim]Goodbye.[/dim]")
                break

            try:
                with console.status("[cyan]Thinking...[/cyan]"):
                    result = pipeline.query(raw, options, user_id=user)
            except RAGError as exc:
                console.print(f"[red]{exc}[/red]")
                continue
            _print_result(result)


def _print_result(result: QueryResult) -> None:
    """Render a QueryResult to the terminal using Rich."""
    console.print()
    console.print(
        Panel(
            Markdown(result.answer),
            title="[bold green]Answer[/bold green]",
            border_style="green",
            expand=True,
        )
    )

    if result.citations:
        table = Table(
            "No.", "Resource", "Excerpt", "Score",
            box=box.SIMPLE,
            show_header=True,
            header_style="bold dim",
        )
        for i, cit in enumerate(result.citations, start=1):
            table.add_row(
                str(i),
                cit.resource_title[:40] + ("..." if len(cit.resource_title) > 40 else ""),
                cit.chunk_content[:60].replace("\n", " ") + "...",
                f"{cit.relevance_score:.2f}",
            )
        console.print(table)

    console.print(
        f"[dim]"
        f"total={result.processing_time_ms}ms  |  tokens={result.tokens_used}"
        f"{'  |  cached' if result.from_cache else ''}"
        f"[/dim]\n"
    )


@app.command()
def summary(
    resource_id: str = typer.Argument(..., help="Resource id to summarise"),
    depth: str = typer.Option("intermediate", "--depth", help="basic | intermediate | advanced"),
    language: str = typer.Option("en", "--language", help="Summary language"),
    json_out: bool = typer.Option(False, "--json", help="Print result as JSON"),
    config: str = ConfigOption,
) -> None:
    """Generate a structured academic summary of a resource."""
    cfg = _setup(config)
    pipeline = _open_pipeline(cfg)

    with pipeline:
        try:
            with console.status("[cyan]Summarising...[/cyan]"):
                result = pipeline.generate_summary(resource_id, depth=depth, language=language)
        except RAGError as exc:
            _fail(exc)

    if json_out:
        console.print_json(result.model_dump_json())
        return
    _print_summary(result)


def _print_summary(result: SummaryResult) -> None:
    s = result.summary
    if not result.structured:
        console.print("[yellow]The model did not return structured output; showing raw text.[/yellow]")
    console.print(Panel(Markdown(s.theoretical_context), title="[bold]Theoretical context[/bold]"))

    sections = [
        ("Key ideas", s.key_ideas),
        ("Common mistakes", s.common_mistakes),
        ("Review checklist", s.review_checklist),
        ("References", s.references),
    ]
    for title, items in sections:
        if items:
            console.print(f"\n[bold cyan]{title}[/bold cyan]")
            for item in items:
                console.print(f"  - {item}")

    if s.definitions:
        table = Table("Term", "Definition", "Formula", box=box.SIMPLE, header_style="bold dim")
        for d in s.definitions:
            table.add_row(d.term, d.definition, d.formula or "")
        console.print(table)

    for i, example in enumerate(s.examples, start=1):
        console.print(f"\n[bold]Example {i}:[/bold] {example.description}")
        if example.solution:
            console.print(f"[dim]{example.solution}[/dim]")


@app.command()
def stats(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id"),
    config: str = ConfigOption,
) -> None:
    """Show query counts and token usage for a user."""
    cfg = _setup(config)
    from src.storage.catalog import create_storage

    _, query_log, _ = create_storage(cfg)
    entries = query_log.list_for_user(user)

    console.print()
    console.print(f"[bold]Query stats[/bold] for [cyan]{user or 'anonymous'}[/cyan]")
    console.print(f"  Queries : [green]{len(entries)}[/green]")
    console.print(f"  Tokens  : [green]{sum(e.tokens_used for e in entries):,}[/green]")

    if entries:
        table = Table("When", "Query", "Tokens", box=box.SIMPLE, header_style="bold dim")
        for e in entries[:10]:
            table.add_row(
                e.created_at.strftime("%Y-%m-%d %H:%M"),
                e.query[:60] + ("..." if len(e.query) > 60 else ""),
                str(e.tokens_used),
            )
        console.print(table)


@app.command()
def health(config: str = ConfigOption) -> None:
    """Show vector count, cache hit rates and configured providers."""
    cfg = _setup(config)
    pipeline = _open_pipeline(cfg)
    with pipeline:
        console.print_json(json.dumps(pipeline.health()))


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
