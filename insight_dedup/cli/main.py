"""
dedup: operator CLI for the insight deduplication pipeline.

Commands:
- dedup cluster        - Cluster one batch (optionally one source/run)
- dedup cluster-all    - Backfill embeddings, then cluster everything
- dedup status         - Latest job and remaining work
- dedup embeddings     - Backfill missing embeddings only
- dedup clusters       - List merge proposals
- dedup approve        - Approve a cluster
- dedup reject         - Reject a cluster
- dedup merge-into     - Merge one raw insight into a unique insight
- dedup db init        - Create tables
"""
from __future__ import annotations

from typing import NoReturn, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from config import get_settings
from insight_dedup.db.database import init_db, session_scope
from insight_dedup.exceptions import InsightDedupError
from insight_dedup.logging_setup import configure_logging
from insight_dedup.semantic import (
    BatchEmbeddingProcessor,
    ClusterAllOrchestrator,
    ClusterBuilder,
    ClusterStore,
    ProgressEvent,
    ReviewService,
    get_embedding_gateway,
)

# =============================================================================
# CLI Setup
# =============================================================================

app = typer.Typer(
    name="dedup",
    help="Insight deduplication: embeddings, clustering and review",
    no_args_is_help=True,
)
db_app = typer.Typer(help="Database management", no_args_is_help=True)
app.add_typer(db_app, name="db")

console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show log output"),
) -> None:
    configure_logging(level=None if verbose else "WARNING")


def _fail(exc: Exception) -> NoReturn:
    console.print(f"[bold red]Error:[/bold red] {exc}")
    raise typer.Exit(1)


def _counts_table(title: str, counts: dict) -> Table:
    table = Table(title=title, show_header=False, box=None)
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold")
    for key, value in counts.items():
        table.add_row(key.replace("_", " "), str(value))
    return table


class _ConsoleChannel:
    """Print progress events as they arrive."""

    def publish(self, event: ProgressEvent) -> None:
        if event.error:
            console.print(f"[red]{event.stage}: {event.message}[/red]")
        elif event.skipped:
            console.print(f"[dim]{event.stage}: skipped[/dim]")
        else:
            line = f"{event.stage}: {event.processed}/{event.total} ({event.errors} errors)"
            if event.counters:
                line += "  " + ", ".join(f"{k}={v}" for k, v in event.counters.items())
            console.print(f"[green]{line}[/green]" if event.complete else f"[cyan]{line}[/cyan]")

    def close(self) -> None:
        pass


# =============================================================================
# Clustering
# =============================================================================


@app.command()
def cluster(
    source_id: Optional[UUID] = typer.Option(None, "--source-id", help="Only this source"),
    run_id: Optional[UUID] = typer.Option(None, "--run-id", help="Only this extraction run"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Insights to consider"),
) -> None:
    """Cluster one batch of unclustered insights."""
    settings = get_settings()
    try:
        with session_scope() as session:
            result = ClusterBuilder(session, settings=settings).build_merge_clusters(
                source_id=source_id, run_id=run_id, limit=limit
            )
            counts = result.to_dict()
            counts.pop("cluster_ids")
    except (InsightDedupError, ValueError) as e:
        _fail(e)

    console.print(_counts_table("Clustering batch", counts))


@app.command("cluster-all")
def cluster_all(
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", min=1),
    max_batches: Optional[int] = typer.Option(None, "--max-batches", "-m", min=1),
    skip_embeddings: bool = typer.Option(
        False, "--skip-embeddings", help="Skip the embedding backfill"
    ),
) -> None:
    """Backfill embeddings, then cluster in batches."""
    settings = get_settings()
    try:
        with session_scope() as session:
            gateway = None if skip_embeddings else get_embedding_gateway(settings)
            orchestrator = ClusterAllOrchestrator(session, settings=settings, gateway=gateway)
            result = orchestrator.run(
                batch_size=batch_size,
                max_batches=max_batches,
                skip_embeddings=skip_embeddings,
                channel=_ConsoleChannel(),
            )
    except (InsightDedupError, ValueError) as e:
        _fail(e)

    console.print(f"\n[bold]Job {result.job_id}[/bold]: {result.status}")
    console.print(_counts_table("Embeddings", result.embeddings))
    console.print(_counts_table("Clustering", result.clustering))


@app.command()
def status() -> None:
    """Show the latest cluster-all job and remaining work."""
    try:
        with session_scope() as session:
            store = ClusterStore(session)
            job = store.latest_job()
            job_data = job.to_dict() if job else None
            missing = store.count_missing_embeddings()
            unclustered = store.count_unclustered()
    except (InsightDedupError, ValueError) as e:
        _fail(e)

    console.print(
        _counts_table(
            "Remaining work",
            {"missing embeddings": missing, "unclustered insights": unclustered},
        )
    )
    if job_data is None:
        console.print("[dim]No cluster jobs yet[/dim]")
        return

    console.print(f"\n[bold]Latest job {job_data['id']}[/bold]: {job_data['status']}")
    console.print(f"[dim]started {job_data['started_at']}, completed {job_data['completed_at']}[/dim]")
    if job_data["error_message"]:
        console.print(f"[red]{job_data['error_message']}[/red]")
    console.print(_counts_table("Embeddings", job_data["embeddings"]))
    console.print(_counts_table("Clustering", job_data["clustering"]))


@app.command()
def embeddings(
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=1, help="Maximum insights"),
) -> None:
    """Generate embeddings for insights that have none."""
    settings = get_settings()
    try:
        with session_scope() as session:
            processor = BatchEmbeddingProcessor(
                session, gateway=get_embedding_gateway(settings), settings=settings
            )
            result = processor.generate_missing(limit=limit)
    except (InsightDedupError, ValueError) as e:
        _fail(e)

    console.print(
        _counts_table(
            "Embedding backfill",
            {"total": result.total, "processed": result.processed, "errors": result.errors},
        )
    )
    for message in result.error_messages:
        console.print(f"[yellow]{message}[/yellow]")


# =============================================================================
# Review
# =============================================================================


@app.command()
def clusters(
    status_filter: str = typer.Option("pending", "--status", "-s", help="pending/approved/rejected"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of clusters to show"),
) -> None:
    """List merge clusters."""
    try:
        with session_scope() as session:
            rows = []
            for c in ReviewService(session).list_clusters(status=status_filter, limit=limit):
                canonical = next(
                    (m for m in c.members if m.raw_insight_id == c.suggested_canonical_raw_id),
                    c.members[0] if c.members else None,
                )
                rows.append(
                    (
                        str(c.id),
                        "existing" if c.is_merge_into_existing else "new",
                        str(len(c.members)),
                        canonical.raw_insight.statement[:60] if canonical else "",
                    )
                )
    except (InsightDedupError, ValueError) as e:
        _fail(e)

    if not rows:
        console.print(f"[dim]No {status_filter} clusters[/dim]")
        return

    table = Table(title=f"{status_filter.capitalize()} clusters")
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Members", justify="right")
    table.add_column("Statement")
    for row in rows:
        table.add_row(*row)
    console.print(table)


@app.command()
def approve(
    cluster_id: UUID = typer.Argument(..., help="Cluster to approve"),
    select: Optional[list[UUID]] = typer.Option(
        None, "--select", help="Member to merge (repeatable, default all)"
    ),
    canonical: Optional[UUID] = typer.Option(None, "--canonical", help="Canonical member"),
) -> None:
    """Approve a cluster and merge its selected members."""
    try:
        with session_scope() as session:
            review = ReviewService(session)
            selected = select or [m.raw_insight_id for m in review.get_cluster(cluster_id).members]
            unique = review.approve_cluster(cluster_id, selected, canonical_raw_id=canonical)
            unique_id, statement = unique.id, unique.canonical_statement
    except (InsightDedupError, ValueError) as e:
        _fail(e)

    console.print(f"[green]Merged {len(selected)} insights into {unique_id}[/green]")
    console.print(f"[dim]{statement}[/dim]")


@app.command()
def reject(cluster_id: UUID = typer.Argument(..., help="Cluster to reject")) -> None:
    """Reject a cluster."""
    try:
        with session_scope() as session:
            ReviewService(session).reject_cluster(cluster_id)
    except (InsightDedupError, ValueError) as e:
        _fail(e)

    console.print(f"[yellow]Rejected cluster {cluster_id}[/yellow]")


@app.command("merge-into")
def merge_into(
    raw_insight_id: UUID = typer.Argument(..., help="Raw insight to merge"),
    unique_insight_id: UUID = typer.Argument(..., help="Target unique insight"),
) -> None:
    """Merge one raw insight into an existing unique insight."""
    try:
        with session_scope() as session:
            ReviewService(session).merge_into_unique(raw_insight_id, unique_insight_id)
    except (InsightDedupError, ValueError) as e:
        _fail(e)

    console.print(f"[green]Merged {raw_insight_id} into {unique_insight_id}[/green]")


# =============================================================================
# Database
# =============================================================================


@db_app.command("init")
def db_init() -> None:
    """Create all tables."""
    try:
        init_db()
    except InsightDedupError as e:
        _fail(e)

    console.print("[green]Database tables initialized[/green]")


if __name__ == "__main__":
    app()
