"""
Typer CLI for the notedrift analytics engine.

Every rebuild is a batch job an external scheduler can invoke.

Commands:
    notedrift db init                 - Create source and derived tables
    notedrift drift rebuild           - Recompute all drift events from history
    notedrift drift detect            - Append events for new history rows
    notedrift drift annotate          - Backfill drift_score / change_type on history
    notedrift drift timeline          - Daily drift curve and growth insight
    notedrift drift events            - List recent drift events
    notedrift dynamics capture        - Store today's cluster snapshot
    notedrift dynamics summary        - Summarize one day's snapshot
    notedrift influence rebuild       - Rebuild the concept influence graph
    notedrift influence stats         - Graph-wide weight statistics
    notedrift influence node ID       - Influencers / influenced notes of one note
    notedrift influence causal [ID]   - Causal heuristics for a note or the whole graph
    notedrift direction flows         - Inter-cluster drift flows
    notedrift direction recent        - Direction of recent drifts
    notedrift direction note ID       - Direction of one note's latest drift
    notedrift identity show           - Compute cluster identities
    notedrift identity refresh        - Rewrite the identity cache

Usage:
    notedrift --help
    notedrift drift rebuild
    notedrift dynamics capture --date 2026-01-15
    notedrift influence node note-123 --decay
"""

from __future__ import annotations

import json
import sys
from typing import Optional

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import get_settings
from src.db.database import init_db, session_scope

app = typer.Typer(
    help="notedrift: semantic drift and concept-influence analytics for a note corpus",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main_callback() -> None:
    """
    Semantic drift analytics.

    Reads notes, embeddings and edit history from the configured database
    and rebuilds the derived drift, dynamics, influence and identity tables.
    """
    settings = get_settings()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
    if settings.log_file:
        logger.add(settings.log_file, level=settings.log_level, rotation="10 MB")


def _fail(action: str, exc: Exception) -> None:
    logger.exception(f"{action} failed: {exc}")
    console.print(f"[red]✗[/red] {action} failed: {exc}")
    raise typer.Exit(code=1)


# ========================================
# Database Commands
# ========================================

db_app = typer.Typer(help="Database management")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """Create all tables that do not exist yet."""
    logger.info("Initializing database tables...")
    try:
        init_db()
    except Exception as e:
        _fail("Database init", e)
    rprint("[green]✓[/green] Database initialized!")


# ========================================
# Drift Commands
# ========================================

drift_app = typer.Typer(help="Drift events, history annotation and timeline")
app.add_typer(drift_app, name="drift")


@drift_app.command("rebuild")
def drift_rebuild() -> None:
    """Clear drift_events and recompute them from the full history."""
    from src.drift.event_detector import DriftEventService

    try:
        with session_scope() as session:
            result = DriftEventService(session).rebuild_drift_events()
    except Exception as e:
        _fail("Drift rebuild", e)

    table = Table(title="Drift Event Rebuild")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Cleared", str(result.cleared))
    table.add_row("Detected", str(result.detected))
    table.add_row("Inserted", str(result.inserted))
    for event_type, count in result.by_type.items():
        table.add_row(f"type: {event_type}", str(count))
    for severity, count in result.by_severity.items():
        table.add_row(f"severity: {severity}", str(count))
    console.print(table)


@drift_app.command("detect")
def drift_detect(
    since: Optional[int] = typer.Option(None, "--since", help="Only history rows at or after this epoch second"),
) -> None:
    """Detect events for recent history rows and append them."""
    from src.drift.event_detector import DriftEventService, summarize_events

    try:
        with session_scope() as session:
            service = DriftEventService(session)
            events = service.detect_drift_events(since=since)
            inserted = service.save_drift_events(events)
    except Exception as e:
        _fail("Drift detection", e)
    rprint(f"[green]✓[/green] {inserted} drift events saved")

    summary = summarize_events(events)
    if summary["total"]:
        kinds = ", ".join(f"{kind}={count}" for kind, count in sorted(summary["by_type"].items()))
        rprint(f"[dim]{kinds}; max drift score {summary['max_drift_score']:.4f}[/dim]")


@drift_app.command("annotate")
def drift_annotate() -> None:
    """Backfill missing drift_score and change_type on history rows."""
    from src.drift.event_detector import DriftEventService

    try:
        with session_scope() as session:
            result = DriftEventService(session).annotate_history()
    except Exception as e:
        _fail("History annotation", e)
    rprint(
        f"[green]✓[/green] Scanned {result.scanned} rows: "
        f"{result.scored} scored, {result.classified} classified, {result.skipped} skipped"
    )


@drift_app.command("timeline")
def drift_timeline(
    range_days: int = typer.Option(90, "--range", "-r", help="Days of history to include"),
    insight: bool = typer.Option(False, "--insight", help="Also show the growth insight"),
) -> None:
    """Show the daily drift curve with its EMA."""
    from src.drift.timeline import DriftTimelineService

    try:
        with session_scope() as session:
            service = DriftTimelineService(session)
            timeline = service.build_drift_timeline(range_days=range_days)
            report = service.generate_drift_insight(range_days=range_days) if insight else None
    except Exception as e:
        _fail("Drift timeline", e)

    table = Table(title=f"Drift Timeline ({timeline.range})")
    table.add_column("Date", style="cyan")
    table.add_column("Drift", justify="right")
    table.add_column("EMA", justify="right")
    for day in timeline.days:
        table.add_row(day.date, f"{day.drift:.4f}", f"{day.ema:.4f}")
    console.print(table)

    summary = timeline.summary
    rprint(
        f"State: [bold]{summary.state}[/bold]  Trend: [bold]{summary.trend}[/bold]  "
        f"mean={summary.mean:.4f} std={summary.std_dev:.4f}"
    )
    if report is not None:
        rprint(
            f"Mode: [bold]{report.mode}[/bold]  angle={report.angle.angle_degrees:.1f}°  "
            f"forecast 3d={report.forecast.forecast_3d:.4f} 7d={report.forecast.forecast_7d:.4f} "
            f"({report.forecast.confidence})"
        )
        rprint(f"Warning: {report.warning.state} ({report.warning.severity})")
        rprint(f"[dim]{report.advice}[/dim]")


@drift_app.command("events")
def drift_events(
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum events to show"),
    unresolved: bool = typer.Option(False, "--unresolved", help="Only unresolved events"),
) -> None:
    """List the most recent drift events."""
    from src.drift.event_detector import DriftEventService

    try:
        with session_scope() as session:
            events = DriftEventService(session).list_drift_events(limit=limit, unresolved_only=unresolved)
    except Exception as e:
        _fail("Listing drift events", e)

    if not events:
        rprint("[yellow]No drift events[/yellow]")
        return

    table = Table(title="Drift Events")
    table.add_column("ID", justify="right")
    table.add_column("Detected", justify="right")
    table.add_column("Severity")
    table.add_column("Type")
    table.add_column("Cluster", justify="right")
    table.add_column("Message")
    for event in events:
        table.add_row(
            str(event["id"]),
            str(event["detected_at"]),
            event["severity"],
            event["type"],
            str(event["related_cluster"]) if event["related_cluster"] is not None else "-",
            event["message"],
        )
    console.print(table)


# ========================================
# Cluster Dynamics Commands
# ========================================

dynamics_app = typer.Typer(help="Daily cluster geometry snapshots")
app.add_typer(dynamics_app, name="dynamics")


@dynamics_app.command("capture")
def dynamics_capture(
    date: Optional[str] = typer.Option(None, "--date", "-d", help="Snapshot date (YYYY-MM-DD, default today UTC)"),
) -> None:
    """Compute and store the snapshot for one day."""
    from src.cluster.dynamics import ClusterDynamicsService

    try:
        with session_scope() as session:
            snapshots = ClusterDynamicsService(session).capture_cluster_dynamics(date=date)
    except Exception as e:
        _fail("Cluster dynamics capture", e)

    table = Table(title="Cluster Dynamics")
    table.add_column("Cluster", justify="right", style="cyan")
    table.add_column("Notes", justify="right")
    table.add_column("Cohesion", justify="right")
    table.add_column("Stability", justify="right")
    for snap in snapshots:
        stability = f"{snap.stability_score:.4f}" if snap.stability_score is not None else "-"
        table.add_row(str(snap.cluster_id), str(snap.note_count), f"{snap.cohesion:.4f}", stability)
    console.print(table)
    rprint(f"[green]✓[/green] {len(snapshots)} cluster snapshots stored")


@dynamics_app.command("summary")
def dynamics_summary(
    date: Optional[str] = typer.Option(None, "--date", "-d", help="Snapshot date (YYYY-MM-DD, default today UTC)"),
) -> None:
    """Aggregate statistics over one day's snapshots."""
    from src.cluster.dynamics import ClusterDynamicsService

    try:
        with session_scope() as session:
            summary = ClusterDynamicsService(session).get_cluster_dynamics_summary(date)
    except Exception as e:
        _fail("Cluster dynamics summary", e)
    console.print_json(json.dumps(summary))


# ========================================
# Influence Commands
# ========================================

influence_app = typer.Typer(help="Concept influence graph")
app.add_typer(influence_app, name="influence")


@influence_app.command("rebuild")
def influence_rebuild() -> None:
    """Clear and regenerate every influence edge."""
    from src.influence.graph_builder import InfluenceGraphService

    try:
        with session_scope() as session:
            result = InfluenceGraphService(session).rebuild_influence_graph()
    except Exception as e:
        _fail("Influence rebuild", e)
    rprint(
        f"[green]✓[/green] {result.edges_created} edges from {result.notes_processed} drifted notes "
        f"({result.cleared} cleared)"
    )


@influence_app.command("stats")
def influence_stats(
    top: int = typer.Option(5, "--top", "-k", help="Size of the ranked lists"),
    decay: bool = typer.Option(False, "--decay", help="Include time-decay statistics"),
) -> None:
    """Graph-wide weight statistics and top nodes."""
    from src.influence.graph_builder import InfluenceGraphService

    try:
        with session_scope() as session:
            service = InfluenceGraphService(session)
            stats = service.get_influence_stats(top_k=top)
            if decay:
                stats["decay"] = service.get_decay_stats()
                stats["top_decayed_edges"] = [e.to_dict() for e in service.get_all_edges_with_decay(limit=top)]
    except Exception as e:
        _fail("Influence stats", e)
    console.print_json(json.dumps(stats))


@influence_app.command("node")
def influence_node(
    note_id: str = typer.Argument(..., help="Note ID"),
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum edges per direction"),
    decay: bool = typer.Option(False, "--decay", help="Rank by time-decayed weight"),
) -> None:
    """Show who influenced a note and what it influenced."""
    from src.influence.graph_builder import InfluenceGraphService

    try:
        with session_scope() as session:
            service = InfluenceGraphService(session)
            degree = service.get_node_degree(note_id)
            if decay:
                incoming = [e.to_dict() for e in service.get_influencers_of_with_decay(note_id, limit=limit)]
                outgoing = [e.to_dict() for e in service.get_influenced_by_with_decay(note_id, limit=limit)]
            else:
                incoming = service.get_influencers_of(note_id, limit=limit)
                outgoing = service.get_influenced_by(note_id, limit=limit)
    except Exception as e:
        _fail("Influence lookup", e)

    rprint(
        f"[bold]{note_id}[/bold]  in={degree['in_degree']} ({degree['in_weight']:.4f})  "
        f"out={degree['out_degree']} ({degree['out_weight']:.4f})"
    )
    weight_key = "decayed_weight" if decay else "weight"
    for title, edges, other in (
        ("Influenced by", incoming, "source_note_id"),
        ("Influences", outgoing, "target_note_id"),
    ):
        table = Table(title=title)
        table.add_column("Note", style="cyan")
        table.add_column("Weight", justify="right")
        table.add_column("Cosine", justify="right")
        for edge in edges:
            table.add_row(edge[other], f"{edge[weight_key]:.4f}", f"{edge['cosine_sim']:.4f}")
        console.print(table)


@influence_app.command("causal")
def influence_causal(
    note_id: Optional[str] = typer.Argument(None, help="Note ID (omit for the global summary)"),
    lag: Optional[int] = typer.Option(None, "--lag", help="Granger lag in days (default from settings)"),
    top: int = typer.Option(10, "--top", "-k", help="Size of the ranked lists in the global summary"),
) -> None:
    """Correlational causal heuristics for one note, or a global summary."""
    from src.influence.causal import InfluenceCausalService

    try:
        with session_scope() as session:
            service = InfluenceCausalService(session)
            if note_id is None:
                payload = service.get_global_causal_summary(top_k=top)
            else:
                analysis = service.analyze_causality(note_id, lag=lag)
                payload = analysis.to_dict() if analysis else None
    except Exception as e:
        _fail("Causal analysis", e)

    if payload is None:
        rprint(f"[yellow]Unknown note {note_id}[/yellow]")
        raise typer.Exit(code=1)
    console.print_json(json.dumps(payload))
    if note_id is not None:
        rprint(f"[dim]{payload['insight']}[/dim]")


# ========================================
# Direction Commands
# ========================================

direction_app = typer.Typer(help="Drift direction relative to cluster centroids")
app.add_typer(direction_app, name="direction")


@direction_app.command("flows")
def direction_flows(
    days: Optional[int] = typer.Option(None, "--days", help="Window in days (default from settings)"),
) -> None:
    """Aggregate inter-cluster drift flows."""
    from src.drift.direction import DriftDirectionService

    try:
        with session_scope() as session:
            flow = DriftDirectionService(session).analyze_drift_flows(days=days)
    except Exception as e:
        _fail("Drift flow analysis", e)

    table = Table(title=f"Drift Flows ({flow.total_drifts} drifts)")
    table.add_column("From", justify="right")
    table.add_column("To", justify="right")
    table.add_column("Count", justify="right")
    table.add_column("Avg drift", justify="right")
    table.add_column("Avg alignment", justify="right")
    for f in flow.flows:
        table.add_row(
            str(f.from_cluster_id),
            str(f.to_cluster_id),
            str(f.count),
            f"{f.avg_drift_score:.4f}",
            f"{f.avg_alignment:.4f}",
        )
    console.print(table)
    rprint(f"[dim]{flow.insight}[/dim]")


@direction_app.command("recent")
def direction_recent(
    days: int = typer.Option(30, "--days", help="Window in days"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum drifts"),
) -> None:
    """Direction analysis of the most recent drifts."""
    from src.drift.direction import DriftDirectionService

    try:
        with session_scope() as session:
            service = DriftDirectionService(session)
            drifts = service.analyze_recent_drifts(days=days, limit=limit)
            summary = service.direction_summary(days=days)
    except Exception as e:
        _fail("Recent drift analysis", e)

    table = Table(title="Recent Drift Directions")
    table.add_column("Note", style="cyan")
    table.add_column("Drift", justify="right")
    table.add_column("Magnitude", justify="right")
    table.add_column("Trajectory")
    table.add_column("Toward", justify="right")
    for d in drifts:
        toward = str(d.primary_direction.cluster_id) if d.primary_direction else "-"
        table.add_row(d.note_id, f"{d.drift_score:.4f}", f"{d.magnitude:.4f}", d.trajectory, toward)
    console.print(table)
    rprint(f"[dim]{summary['insight']}[/dim]")


@direction_app.command("note")
def direction_note(
    note_id: str = typer.Argument(..., help="Note ID"),
    days: int = typer.Option(365, "--days", help="Window in days"),
) -> None:
    """Direction of one note's latest qualifying drift."""
    from src.drift.direction import DriftDirectionService

    try:
        with session_scope() as session:
            direction = DriftDirectionService(session).analyze_note(note_id, days=days)
    except Exception as e:
        _fail("Note direction analysis", e)

    if direction is None:
        rprint(f"[yellow]No qualifying drift for {note_id}[/yellow]")
        raise typer.Exit(code=1)
    console.print_json(json.dumps(direction.to_dict()))


# ========================================
# Identity Commands
# ========================================

identity_app = typer.Typer(help="Cluster identities (labels, keywords, representatives)")
app.add_typer(identity_app, name="identity")


@identity_app.command("show")
def identity_show(
    cluster_id: Optional[int] = typer.Option(None, "--cluster", "-c", help="Only this cluster"),
    cached: bool = typer.Option(False, "--cached", help="Read the identity cache instead of computing"),
) -> None:
    """Compute (or read cached) cluster identities."""
    from src.cluster.identity import ClusterIdentityService

    try:
        with session_scope() as session:
            service = ClusterIdentityService(session)
            if cached:
                identities = service.get_cached_identities()
            elif cluster_id is not None:
                identity = service.get_cluster_identity(cluster_id)
                identities = [identity.to_dict()] if identity else []
            else:
                identities = [i.to_dict() for i in service.get_all_cluster_identities()]
    except Exception as e:
        _fail("Cluster identity", e)

    if cluster_id is not None:
        identities = [i for i in identities if i["cluster_id"] == cluster_id]
    if not identities:
        rprint("[yellow]No cluster identities (capture dynamics first)[/yellow]")
        return

    table = Table(title="Cluster Identities")
    table.add_column("Cluster", justify="right", style="cyan")
    table.add_column("Label")
    table.add_column("Notes", justify="right")
    table.add_column("Cohesion", justify="right")
    table.add_column("Trend")
    for identity in identities:
        drift = identity.get("drift") or {}
        table.add_row(
            str(identity["cluster_id"]),
            identity["label"],
            str(identity["note_count"]),
            f"{identity['cohesion']:.4f}",
            drift.get("trend", "-"),
        )
    console.print(table)


@identity_app.command("refresh")
def identity_refresh() -> None:
    """Recompute every identity and rewrite the cache."""
    from src.cluster.identity import ClusterIdentityService

    try:
        with session_scope() as session:
            count = ClusterIdentityService(session).refresh_identity_cache()
    except Exception as e:
        _fail("Identity refresh", e)
    rprint(f"[green]✓[/green] {count} cluster identities cached")


def run() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    run()
