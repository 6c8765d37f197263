"""Command-line interface for LeadMiner."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from leadminer import __version__
from leadminer.config import Config, MonitoringConfig, load_config
from leadminer.classifier import ClassificationBatch
from leadminer.container import DependencyContainer
from leadminer.dedup import FingerprintStore
from leadminer.exceptions import ConfigurationError, LeadMinerError
from leadminer.monitoring import ClassificationMonitor
from leadminer.observability import MetricsManager, configure_logging
from leadminer.protocols import Candidate, ClassificationResult
from leadminer.utils import atomic_write_text

console = Console()
logger = structlog.get_logger(__name__)


def read_jsonl(path: Path) -> List[Dict[str, Any]]:
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise click.ClickException(f"{path}:{line_number}: invalid JSON ({e.msg})") from e
    return records


def write_jsonl(path: Path, records: Iterable[Dict[str, Any]]) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open(path, "w", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
            count += 1
    return count


def _stats_table(title: str, stats: Dict[str, Any]) -> Table:
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    for key, value in stats.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                table.add_row(f"{key}.{sub_key}", str(sub_value))
        else:
            table.add_row(key, str(value))
    return table


def _load_config_or_exit(config_path: Optional[Path]) -> Config:
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides configuration)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """LeadMiner - nonprofit travel-auction lead discovery."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level


def _bootstrap(ctx: click.Context) -> Config:
    config = _load_config_or_exit(ctx.obj["config_path"])
    monitoring = config.monitoring
    if ctx.obj["log_level"]:
        monitoring = MonitoringConfig(**{**monitoring.model_dump(), "log_level": ctx.obj["log_level"]})
    configure_logging(monitoring)
    MetricsManager(monitoring).start()
    return config


@cli.command()
@click.argument("queries_file", type=click.File("r"), required=False)
@click.option("--query", "-q", multiple=True, help="Search query (can be used multiple times)")
@click.option("--dry-run", is_flag=True, help="Validate configuration and show the query plan without searching")
@click.pass_context
def run(ctx: click.Context, queries_file: Optional[Any], query: tuple[str, ...], dry_run: bool) -> None:
    """Search, classify and admit leads."""
    config = _bootstrap(ctx)

    query_list: List[str] = []
    if queries_file:
        query_list.extend(line.strip() for line in queries_file if line.strip())
    query_list.extend(query)

    async def run_pipeline() -> Dict[str, Any]:
        container = DependencyContainer(ctx.obj["config_path"], config=config, watch=False)
        async with container.lifecycle():
            pipeline = await container.get_pipeline()
            return await pipeline.run(query_list or None)

    if dry_run:
        from leadminer.search import QueryBuilder

        planned = query_list or QueryBuilder(config.search).build()
        console.print(
            Panel(
                "\n".join(planned[: config.budget.max_search_queries]) or "(no queries)",
                title=f"Query plan ({min(len(planned), config.budget.max_search_queries)} of {len(planned)})",
                border_style="blue",
            )
        )
        return

    console.print(
        Panel.fit(
            f"[bold blue]LeadMiner Run[/bold blue]\n"
            f"Queries: {len(query_list) if query_list else 'generated'}\n"
            f"Max leads: {config.search.max_leads_per_day}\n"
            f"Budget: ${config.budget.budget_limit:.2f}",
            title="Starting Pipeline",
        )
    )
    try:
        summary = asyncio.run(run_pipeline())
    except LeadMinerError as e:
        console.print(f"[red]Pipeline failed: {e}[/red]")
        sys.exit(1)

    console.print(
        Panel(
            f"Stop reason: {summary['stop_reason']}\n"
            f"Queries issued: {summary['queries_issued']}\n"
            f"Candidates found: {summary['candidates_found']}\n"
            f"Leads admitted: {summary['leads_admitted']}\n"
            f"Duration: {summary['duration_seconds']:.2f}s",
            title="Results",
            border_style="green" if not summary["budget_exhausted"] else "yellow",
        )
    )


@cli.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write unique candidates here (JSONL)")
@click.option("--report", type=click.Path(dir_okay=False), help="Write the duplicate cluster report here (JSON)")
@click.pass_context
def dedup(ctx: click.Context, input_file: str, output: Optional[str], report: Optional[str]) -> None:
    """Remove duplicate candidates from a JSONL file."""
    config = _bootstrap(ctx)
    candidates = [Candidate.from_dict(r) for r in read_jsonl(Path(input_file))]

    async def run_dedup() -> tuple[List[Candidate], List[Dict[str, Any]], Dict[str, Any]]:
        container = DependencyContainer(config=config, watch=False)
        async with container.lifecycle():
            store = FingerprintStore(await container.get_embedder(), config.dedup)
            clusters = await store.find_duplicates(candidates)
            unique = await store.deduplicate_batch(candidates)
            cluster_report = [
                {
                    "representative": c.representative.url,
                    "members": [m.url for m in c.members],
                    "similarities": [round(s, 4) for s in c.similarities],
                }
                for c in clusters
            ]
            return unique, cluster_report, store.get_stats()

    unique, cluster_report, stats = asyncio.run(run_dedup())

    if output:
        write_jsonl(Path(output), (c.to_dict() for c in unique))
    if report:
        atomic_write_text(Path(report), json.dumps(cluster_report, indent=2))

    console.print(_stats_table("Deduplication", {"input": len(candidates), "unique": len(unique), **stats}))
    if not output:
        for candidate in unique:
            console.print(candidate.url)


@cli.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write classification results here (JSONL)")
@click.pass_context
def classify(ctx: click.Context, input_file: str, output: Optional[str]) -> None:
    """Classify candidates from a JSONL file."""
    config = _bootstrap(ctx)
    candidates = [Candidate.from_dict(r) for r in read_jsonl(Path(input_file))]

    async def run_classify() -> tuple[ClassificationBatch, Dict[str, Any], Dict[str, Any]]:
        container = DependencyContainer(config=config, watch=False)
        async with container.lifecycle():
            classifier = await container.get_classifier()
            monitor = await container.get_monitor()
            valid = []
            for candidate in candidates:
                try:
                    candidate.validate()
                except LeadMinerError as e:
                    logger.warning("Skipping invalid candidate", url=candidate.url, error=str(e))
                    continue
                valid.append(candidate)
            batch = await classifier.classify_batch(valid)
            snapshot = monitor.analyze(batch.results)
            return batch, classifier.get_classification_stats(batch.results), snapshot.to_dict()

    batch, stats, snapshot = asyncio.run(run_classify())
    results = batch.results

    if output:
        write_jsonl(Path(output), (r.to_dict() for r in results))
    else:
        for result in results:
            console.print_json(json.dumps(result.to_dict(), default=str))

    console.print(_stats_table("Classification", stats))
    console.print(_stats_table("Monitor", {k: v for k, v in snapshot.items() if k != "potential_false_positives"}))

    if batch.budget_exhausted:
        console.print(
            f"[red]Budget exhausted: {batch.budget_error}. {len(batch.deferred)} candidates were not classified.[/red]"
        )
        for candidate in batch.deferred:
            console.print(f"  deferred: {candidate.url}")
        sys.exit(1)


@cli.command()
@click.argument("results_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--format", "output_format", default="json", type=click.Choice(["json", "csv"]), help="Report format"
)
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the report here")
@click.pass_context
def report(ctx: click.Context, results_file: str, output_format: str, output: Optional[str]) -> None:
    """Export a monitoring report for classification results (JSONL from `classify`)."""
    config = _bootstrap(ctx)
    try:
        results = [ClassificationResult.from_dict(r) for r in read_jsonl(Path(results_file))]
    except (KeyError, ValueError, TypeError) as e:
        console.print(f"[red]Unreadable classification results: {e}[/red]")
        sys.exit(1)

    monitor = ClassificationMonitor(config.monitor)
    monitor.analyze(results)
    content = monitor.export_report(output_format)

    if output:
        atomic_write_text(Path(output), content)
        console.print(f"[green]Report saved to {output}[/green]")
    else:
        click.echo(content)


@cli.command("validate-config")
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Load and validate configuration."""
    config = _load_config_or_exit(ctx.obj["config_path"])
    start, end = config.search.date_window
    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("source", str(ctx.obj["config_path"] or "defaults/environment"))
    table.add_row("event window", f"{start} to {end}")
    table.add_row("confidence threshold", str(config.classifier.confidence_threshold))
    table.add_row("review band", f"{config.classifier.review_band_low} - {config.classifier.review_band_high}")
    table.add_row("consistency passes", str(config.classifier.consistency_passes))
    table.add_row("semantic threshold", str(config.dedup.semantic_threshold))
    table.add_row("index backend", config.dedup.index_backend)
    table.add_row("budget limit", f"${config.budget.budget_limit:.2f}")
    table.add_row("max leads per day", str(config.search.max_leads_per_day))
    console.print(table)
    console.print("[green]Configuration is valid[/green]")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
