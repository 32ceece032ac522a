"""
draftrag - CLI Entry Point
---------------------------
Typer commands over the retrieval pipeline and the reference guard.

Usage:
    draftrag chunk notes.txt --size 300 --overlap 30
    draftrag ingest transcript.txt --source-id src-1 --org-id org-1
    draftrag query "what did we say about pricing?" --org-id org-1
    draftrag refs "tighten @launch-post:intro" --lookup lookup.yaml
    draftrag guard edit_section '{"contentId": "c-1"}' --mode agent \\
        --message "fix @launch-post" --lookup lookup.yaml

Settings come from DRAFTRAG_* environment variables (and .env); pass
--config to overlay a YAML file.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
import yaml
from loguru import logger
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from sqlalchemy.engine import make_url

from draftrag.chunking.chunker import Chunker, chunk_text
from draftrag.config import Settings
from draftrag.embedding.embedder import EmbeddingClient
from draftrag.embedding.vector_index import VectorIndexClient
from draftrag.errors import DraftRagError
from draftrag.ingestion.pipeline import IngestionPipeline
from draftrag.references.context import build_reference_context_block
from draftrag.references.guard import Mode, decide
from draftrag.references.parser import parse_references
from draftrag.references.scope import (
    ContentRecord,
    FileRecord,
    ReferenceLookup,
    ReferenceScope,
    SourceRecord,
    build_reference_scope,
    resolve_reference,
)
from draftrag.references.tools import parse_tool_call
from draftrag.retrieval.context_builder import RetrievalContextBuilder, RetrievalStatus
from draftrag.storage.chunk_store import ChunkStore
from draftrag.utils.helpers import dumps_json, read_text_file, truncate_text
from draftrag.utils.logger import setup_logger

app = typer.Typer(
    name="draftrag",
    help="draftrag - chunking, semantic retrieval and reference-scoped tool guard",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

def _load_settings(config: Optional[str]) -> Settings:
    settings = Settings.from_yaml(config) if config else Settings.from_env()
    setup_logger(settings.log_level)
    return settings


def _open_store(settings: Settings) -> ChunkStore:
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    store = ChunkStore.from_url(settings.database_url)
    store.create_schema()
    return store


def _load_lookup(path: Optional[str]) -> ReferenceLookup:
    """YAML with optional `contents`, `files` and `sources` lists."""
    if not path:
        return ReferenceLookup()
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return ReferenceLookup(
        contents=[ContentRecord.model_validate(item) for item in data.get("contents", [])],
        files=[FileRecord.model_validate(item) for item in data.get("files", [])],
        sources=[SourceRecord.model_validate(item) for item in data.get("sources", [])],
    )


def _scope_for(message: str, lookup_path: Optional[str]) -> ReferenceScope:
    return build_reference_scope(parse_references(message), _load_lookup(lookup_path))


def _fail(exc: Exception) -> None:
    console.print(f"[red]{type(exc).__name__}:[/red] {escape(str(exc))}")
    raise typer.Exit(1)


# --- Commands -----------------------------------------------------------------

@app.command()
def chunk(
    path: str = typer.Argument(..., help="Text file to chunk"),
    size: int = typer.Option(600, "--size", help="Target chunk size in tokens"),
    overlap: int = typer.Option(75, "--overlap", help="Overlap between chunks in tokens"),
    json_out: bool = typer.Option(False, "--json", help="Print chunks as JSON"),
) -> None:
    """Split a text file into overlapping, boundary-snapped chunks."""
    setup_logger("WARNING")
    try:
        pieces = chunk_text(read_text_file(path), chunk_size_tokens=size, overlap_tokens=overlap)
    except (DraftRagError, OSError) as exc:
        _fail(exc)
        return

    if json_out:
        print(dumps_json([piece.model_dump() for piece in pieces]))
        return

    table = Table("No.", "Offsets", "Tokens", "Preview", box=box.SIMPLE, header_style="bold dim")
    for piece in pieces:
        table.add_row(
            str(piece.index),
            f"{piece.start_offset}-{piece.end_offset}",
            str(piece.token_estimate),
            truncate_text(piece.text.replace("\n", " "), 70),
        )
    console.print(table)
    console.print(f"[green][OK] {len(pieces)} chunks[/green]")


@app.command()
def ingest(
    path: str = typer.Argument(..., help="Source text file"),
    source_id: str = typer.Option(..., "--source-id", help="Source content id"),
    org_id: str = typer.Option(..., "--org-id", help="Organization id"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML settings overlay"),
    json_out: bool = typer.Option(False, "--json", help="Print the ingestion report as JSON"),
) -> None:
    """Chunk a source, store its chunks and sync its vectors."""
    settings = _load_settings(config)
    try:
        text = read_text_file(path)
    except OSError as exc:
        _fail(exc)
        return

    embedder = EmbeddingClient(settings.embedding)
    index = VectorIndexClient(settings.vector_index)
    pipeline = IngestionPipeline(
        Chunker(settings.chunking), _open_store(settings), embedder, index
    )

    try:
        with console.status("[cyan]Ingesting...[/cyan]"):
            report = pipeline.ingest(source_id, org_id, text)
    except DraftRagError as exc:
        _fail(exc)
        return
    finally:
        embedder.close()
        index.close()

    if json_out:
        print(dumps_json(report.model_dump()))
        return

    colour = "green" if report.vectors_synced else "yellow"
    console.print(
        Panel(
            f"chunks      : {report.chunk_count} (was {report.previous_chunk_count})\n"
            f"vectors     : {report.vectors_upserted} upserted, {report.orphans_deleted} orphans deleted\n"
            f"synced      : [{colour}]{report.vectors_synced}[/{colour}]"
            + (f"\nerror       : [yellow]{report.error}[/yellow]" if report.error else ""),
            title=f"[bold]{source_id}[/bold]",
            border_style=colour,
            expand=False,
        )
    )


@app.command()
def query(
    text: str = typer.Argument(..., help="Question to retrieve context for"),
    org_id: str = typer.Option(..., "--org-id", help="Organization id"),
    source_id: Optional[str] = typer.Option(None, "--source-id", help="Restrict to one source"),
    top_k: Optional[int] = typer.Option(None, "--top-k", help="Override retrieval top_k"),
    budget: Optional[int] = typer.Option(None, "--budget", help="Override the token budget"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML settings overlay"),
    json_out: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Retrieve a token-budgeted, cited context for a query."""
    settings = _load_settings(config)
    retrieval = settings.retrieval.model_copy(
        update={
            key: value
            for key, value in (("top_k", top_k), ("token_budget", budget))
            if value is not None
        }
    )
    embedder = EmbeddingClient(settings.embedding)
    index = VectorIndexClient(settings.vector_index)
    builder = RetrievalContextBuilder(embedder, index, _open_store(settings), retrieval)
    try:
        result = builder.build(text, organization_id=org_id, source_content_id=source_id)
    finally:
        embedder.close()
        index.close()

    context, citations = result.render()
    if json_out:
        payload = result.model_dump(mode="json")
        payload["context"] = context
        payload["citations"] = citations
        print(dumps_json(payload))
        return

    if result.status in (RetrievalStatus.FAULT, RetrievalStatus.UNAVAILABLE):
        console.print(f"[yellow]Retrieval {result.status.value}:[/yellow] {result.reason}")
    if not citations:
        console.print("[dim]No relevant context found.[/dim]")
        return

    console.print(Panel(context, title="[bold green]Context[/bold green]", border_style="green"))
    table = Table("No.", "Source", "Chunk", "Score", box=box.SIMPLE, header_style="bold dim")
    for cit in citations:
        table.add_row(
            str(cit["index"]),
            cit["source_content_id"],
            str(cit["chunk_index"]),
            f"{cit['relevance_score']:.3f}",
        )
    console.print(table)
    console.print(f"[dim]strategy={result.strategy}  tokens={result.token_count}[/dim]\n")


@app.command()
def refs(
    message: str = typer.Argument(..., help="Chat message containing @mentions"),
    lookup: Optional[str] = typer.Option(None, "--lookup", "-l", help="YAML lookup tables"),
    json_out: bool = typer.Option(False, "--json", help="Print tokens and scope as JSON"),
) -> None:
    """Parse @mentions and show which entities they scope."""
    setup_logger("WARNING")
    tokens = parse_references(message)
    tables = _load_lookup(lookup)
    scope = build_reference_scope(tokens, tables)
    unresolved = [token for token in tokens if resolve_reference(token, tables) is None]

    if json_out:
        print(
            dumps_json(
                {
                    "tokens": [token.model_dump(mode="json") for token in tokens],
                    "scope": [entry.model_dump(mode="json") for entry in scope],
                    "allowedContentIds": sorted(scope.allowed_content_ids),
                    "allowedSectionIds": sorted(scope.allowed_section_ids),
                    "unresolved": [token.raw for token in unresolved],
                }
            )
        )
        return

    table = Table("Token", "Identifier", "Anchor", "Offsets", box=box.SIMPLE, header_style="bold dim")
    for token in tokens:
        anchor = f"{token.anchor.kind.value}:{token.anchor.value}" if token.anchor else "-"
        table.add_row(token.raw, token.identifier, anchor, f"{token.start_index}-{token.end_index}")
    console.print(table)

    block = build_reference_context_block(scope, unresolved=unresolved)
    if block:
        console.print(Panel(Markdown(block), title="[bold]Scope[/bold]", expand=True))
    else:
        console.print("[dim]No references.[/dim]")


@app.command()
def guard(
    tool: str = typer.Argument(..., help="Tool name, e.g. edit_section"),
    arguments: str = typer.Argument("{}", help="Tool arguments as JSON"),
    mode: Mode = typer.Option(Mode.CHAT, "--mode", "-m", help="chat or agent"),
    message: str = typer.Option("", "--message", help="User message whose @mentions form the scope"),
    lookup: Optional[str] = typer.Option(None, "--lookup", "-l", help="YAML lookup tables"),
) -> None:
    """Check whether a tool call would be allowed."""
    setup_logger("WARNING")
    invocation = parse_tool_call(tool, arguments)
    if invocation is None:
        console.print(f"[red]Invalid tool call:[/red] {tool} {arguments}")
        raise typer.Exit(2)

    denial = decide(invocation, mode, _scope_for(message, lookup))
    if denial is None:
        console.print(f"[green][OK] {tool} allowed in {mode.value} mode[/green]")
        return
    logger.debug(f"[Guard] {tool} denied")
    console.print(Panel(denial, title="[red]Denied[/red]", border_style="red", expand=False))
    raise typer.Exit(1)


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
