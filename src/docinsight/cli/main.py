import os
from pathlib import Path
from typing import List

import typer
from rich.console import Console
from rich.table import Table

from docinsight.core.documents import delete_document, list_documents, upload_document
from docinsight.core.errors import DocInsightError
from docinsight.core.logging_config import configure_logging
from docinsight.core.merge import Fallback
from docinsight.core.models import Insight
from docinsight.core.pipeline import DocInsight

app = typer.Typer(help="DocInsight CLI: PDF chunking, semantic search and insight extraction")
console = Console()

# Initialize structured logging
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true"
)

DEFAULT_OWNER = os.getenv("DOCINSIGHT_OWNER", "local")


def _service() -> DocInsight:
    try:
        return DocInsight.from_env()
    except ValueError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        raise typer.Exit(1)


def _print_insights(insights: List[Insight], verbose: bool = False):
    for insight in insights:
        pages = ", ".join(str(source.page) for source in insight.sources)
        console.print(f"[bold cyan]{insight.id}[/] [bold]{insight.title}[/]")
        console.print(f"  {insight.description}")
        if pages:
            console.print(f"  [dim]Pages: {pages}[/]")
        if verbose:
            for source in insight.sources:
                console.print(f"  [dim]p.{source.page} {source.section}: \"{source.quote}\"[/]")
            for direction in insight.research_directions:
                console.print(f"  [green]{direction.category}:[/] {direction.title}")
        console.print()


@app.command()
def upload(
    path: str,
    owner: str = typer.Option(DEFAULT_OWNER, help="Owner identity for the document"),
    process: bool = typer.Option(True, "--process/--no-process", help="Process right after upload"),
):
    """Upload a PDF and (by default) process it."""
    pdf_path = Path(path)
    if not pdf_path.is_file():
        console.print(f"[red]Error:[/] {path} is not a file")
        raise typer.Exit(1)

    content_type = "application/pdf" if pdf_path.suffix.lower() == ".pdf" else "application/octet-stream"
    service = _service()

    try:
        document = upload_document(
            service.store,
            service.storage,
            owner_id=owner,
            file_name=pdf_path.name,
            data=pdf_path.read_bytes(),
            content_type=content_type,
        )
    except (ValueError, DocInsightError) as e:
        console.print(f"[red]Upload failed:[/] {e}")
        raise typer.Exit(1)

    console.print(f"[green]✅ Uploaded[/] {document.file_name} as [bold]{document.id}[/]")
    if process:
        _process(service, document.id)


def _process(service: DocInsight, document_id: str):
    with console.status("[bold green]Extracting, chunking and embedding..."):
        result = service.process_document(document_id)

    if not result.success:
        console.print(f"[red]Processing failed:[/] {result.error}")
        raise typer.Exit(1)

    document = service.store.get_document(document_id)
    chunks = service.store.count_chunks(document_id)
    console.print(f"[green]✅ Document ready![/]")
    console.print(f"[bold]Pages:[/] {document.total_pages if document else '?'}")
    console.print(f"[bold]Chunks:[/] {chunks}")


@app.command()
def process(document_id: str):
    """(Re)process an uploaded document."""
    _process(_service(), document_id)


@app.command()
def documents(owner: str = typer.Option(DEFAULT_OWNER, help="Owner identity")):
    """List an owner's documents, newest first."""
    service = _service()
    docs = list_documents(service.store, owner)
    if not docs:
        console.print("[yellow]No documents found[/]")
        return

    table = Table(title=f"Documents for {owner}")
    table.add_column("ID", style="cyan")
    table.add_column("File")
    table.add_column("Pages", justify="right")
    table.add_column("Status")
    table.add_column("Created")
    for doc in docs:
        table.add_row(
            doc.id,
            doc.file_name,
            str(doc.total_pages) if doc.total_pages is not None else "-",
            doc.status,
            doc.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def delete(
    document_id: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a document with its chunks and cached insights."""
    if not yes and not typer.confirm(f"Delete document {document_id}?"):
        raise typer.Exit(0)

    service = _service()
    if not delete_document(service.store, service.storage, document_id):
        console.print(f"[red]Error:[/] Document {document_id} not found")
        raise typer.Exit(1)
    console.print(f"[green]✅ Deleted[/] {document_id}")


@app.command()
def insights(
    document_id: str,
    regenerate: bool = typer.Option(False, "--regenerate", help="Discard the cached set and recompute"),
    progressive: bool = typer.Option(False, "--progressive", help="Show insights group by group"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show quotes and research directions"),
):
    """Extract (or load cached) insights for a processed document."""
    service = _service()

    try:
        if progressive and not regenerate:
            _progressive(service, document_id, verbose)
            return

        with console.status("[bold green]Generating insights..."):
            if regenerate:
                result = service.regenerate_insights(document_id)
            else:
                result = service.generate_insights(document_id)
    except DocInsightError as e:
        console.print(f"[red]Insight generation failed:[/] {e}")
        raise typer.Exit(1)

    if not result:
        console.print("[yellow]No insights could be extracted[/]")
        return
    console.print(f"[bold]📚 {len(result)} insights[/]\n")
    _print_insights(result, verbose)


def _progressive(service: DocInsight, document_id: str, verbose: bool):
    run = service.start_progressive_run(document_id)
    if run.cached is not None:
        console.print(f"[dim]Loaded {len(run.cached)} cached insights[/]\n")
        _print_insights(run.cached, verbose)
        return
    if run.plan is None:
        console.print("[yellow]Document has no chunks; process it first[/]")
        raise typer.Exit(1)

    console.print(f"[bold]{run.plan.total_chunks} chunks in {run.plan.total_groups} groups[/]\n")
    try:
        for fresh in run.run():
            console.rule(f"Group {run.group_index}/{run.total_groups}")
            _print_insights(fresh, verbose)
    except KeyboardInterrupt:
        run.cancel()
        console.print("[yellow]Cancelled; nothing was cached[/]")
        raise typer.Exit(130)

    with console.status("[bold green]Merging insights..."):
        outcome = run.finish()
    if outcome is None:
        console.print("[yellow]No insights could be extracted[/]")
        return
    if isinstance(outcome, Fallback):
        console.print(f"[yellow]Merge failed ({outcome.reason}); cached unmerged insights[/]")

    console.rule("Final insights")
    _print_insights(outcome.insights, verbose)


@app.command()
def search(
    document_id: str,
    query: str,
    top_k: int = typer.Option(8, "--top-k", "-k", help="Maximum number of results"),
    threshold: float = typer.Option(0.3, help="Minimum cosine similarity"),
):
    """Semantic search over one document's chunks."""
    service = _service()
    try:
        matches = service.search_chunks(document_id, query, top_k=top_k, threshold=threshold)
    except DocInsightError as e:
        console.print(f"[red]Search failed:[/] {e}")
        raise typer.Exit(1)

    if not matches:
        console.print("[yellow]No matching chunks[/]")
        return

    for match in matches:
        pages = f"{match.page_start}" if match.page_start == match.page_end else f"{match.page_start}-{match.page_end}"
        console.print(f"[bold cyan]#{match.chunk_index}[/] pages {pages} [green]{match.similarity:.3f}[/]")
        console.print(f"  {match.content[:300]}{'...' if len(match.content) > 300 else ''}\n")


if __name__ == "__main__":
    app()
