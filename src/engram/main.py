"""Engram command line entry point.

Thin wrapper over MemoryEngine for storing, searching and maintaining
memories from a terminal.
"""

from __future__ import annotations

import asyncio
import logging
import logging.config
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import click
from rich.console import Console
from rich.table import Table

from .config import EngramConfig
from .errors import EngramError
from .memory.manager import MemoryEngine
from .memory.models import MemorySource, MemoryType

logger = logging.getLogger(__name__)

# Rich console for output
console = Console()

T = TypeVar("T")


def _format_time(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def _run(config: EngramConfig, action: Callable[[MemoryEngine], Awaitable[T]]) -> T:
    """Run action against an initialized engine, exiting on engine errors."""

    async def run_engine() -> T:
        async with MemoryEngine(config) as engine:
            result = await action(engine)
            await engine.flush()
            return result

    try:
        return asyncio.run(run_engine())
    except EngramError as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True),
    help="Path to YAML config file",
)
@click.option(
    "--verbose",
    is_flag=True,
    help="Enable verbose/debug logging",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """
    Engram - semantic long-term memory for conversational assistants.
    """
    try:
        config = EngramConfig.load(yaml_path=Path(config_path) if config_path else None)
    except ValueError as e:
        console.print(f"[red]Failed to load configuration: {e}[/red]")
        sys.exit(1)

    logging.config.dictConfig(config.get_log_config())
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled")

    ctx.obj = config


@cli.command()
@click.argument("user_id")
@click.argument("content")
@click.option("--type", "memory_type", type=click.Choice([t.value for t in MemoryType]), help="Override the classified type")
@click.option("--importance", type=click.FloatRange(0.0, 1.0), help="Override the default importance")
@click.option(
    "--source",
    type=click.Choice([s.value for s in MemorySource]),
    default=MemorySource.EXPLICIT.value,
    show_default=True,
)
@click.pass_obj
def store(
    config: EngramConfig,
    user_id: str,
    content: str,
    memory_type: str | None,
    importance: float | None,
    source: str,
) -> None:
    """Store a memory for USER_ID."""
    memory_id = _run(
        config,
        lambda engine: engine.store_memory(
            user_id, content, type=memory_type, source=source, importance=importance
        ),
    )
    console.print(f"[green]✓[/green] Stored memory {memory_id}")


@cli.command()
@click.argument("user_id")
@click.argument("query")
@click.option("--top-k", type=click.IntRange(min=1), help="Maximum number of results")
@click.option("--min-similarity", type=click.FloatRange(-1.0, 1.0), help="Minimum cosine similarity")
@click.pass_obj
def search(
    config: EngramConfig,
    user_id: str,
    query: str,
    top_k: int | None,
    min_similarity: float | None,
) -> None:
    """Search USER_ID's memories for QUERY."""
    results = _run(
        config,
        lambda engine: engine.search_memories(user_id, query, top_k=top_k, min_similarity=min_similarity),
    )

    if not results:
        console.print("[yellow]No matching memories[/yellow]")
        return

    degraded = any(r.degraded for r in results)
    table = Table(title="Search Results (keyword fallback)" if degraded else "Search Results")
    table.add_column("#", style="cyan")
    table.add_column("Score")
    table.add_column("Similarity")
    table.add_column("Type")
    table.add_column("Memory")

    for i, result in enumerate(results, 1):
        table.add_row(
            str(i),
            f"{result.score:.3f}",
            "-" if result.degraded else f"{result.similarity:.3f}",
            result.record.type.value,
            result.record.summary or result.record.content,
        )

    console.print(table)


@cli.command()
@click.argument("user_id")
@click.argument("query")
@click.pass_obj
def context(config: EngramConfig, user_id: str, query: str) -> None:
    """Print the context block USER_ID would get for QUERY."""
    text = _run(config, lambda engine: engine.build_context(user_id, query))
    if not text:
        console.print("[yellow]No context available[/yellow]")
        return
    console.print(text, markup=False, highlight=False)


@cli.command()
@click.option("--user", "user_id", help="Limit the pass to one user")
@click.pass_obj
def decay(config: EngramConfig, user_id: str | None) -> None:
    """Run one decay pass."""
    report = _run(config, lambda engine: engine.run_decay_pass(user_id=user_id))

    table = Table(title="Decay Pass")
    table.add_column("Metric", style="cyan")
    table.add_column("Count")
    for key in ("scanned", "decayed", "deactivated", "settled", "skipped", "errors"):
        table.add_row(key.capitalize(), str(getattr(report, key)))

    console.print(table)


@cli.command(name="list")
@click.argument("user_id")
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive memories")
@click.pass_obj
def list_memories(config: EngramConfig, user_id: str, include_inactive: bool) -> None:
    """List USER_ID's memories, newest first."""
    records = _run(config, lambda engine: engine.list_memories(user_id, include_inactive=include_inactive))

    if not records:
        console.print("[yellow]No memories stored yet[/yellow]")
        return

    table = Table(title=f"Memories of {user_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Importance")
    table.add_column("Accessed")
    table.add_column("Active")
    table.add_column("Content")

    for record in records:
        table.add_row(
            record.id,
            record.type.value,
            f"{record.effective_importance:.2f}",
            f"{record.access_count} ({_format_time(record.last_accessed_at)})",
            "yes" if record.is_active else "no",
            record.content[:100],
        )

    console.print(table)


@cli.command()
@click.argument("user_id")
@click.argument("memory_id")
@click.pass_obj
def forget(config: EngramConfig, user_id: str, memory_id: str) -> None:
    """Deactivate one memory (kept for audit)."""
    if _run(config, lambda engine: engine.forget(user_id, memory_id)):
        console.print(f"[green]✓[/green] Forgot memory {memory_id}")
    else:
        console.print(f"[red]✗[/red] No memory {memory_id} for {user_id}")
        sys.exit(1)


@cli.command()
@click.argument("user_id")
@click.argument("memory_id", required=False)
@click.option("--inactive", is_flag=True, help="Delete every inactive memory of USER_ID")
@click.pass_obj
def purge(config: EngramConfig, user_id: str, memory_id: str | None, inactive: bool) -> None:
    """Permanently delete MEMORY_ID, or all inactive memories with --inactive."""
    if inactive == (memory_id is not None):
        raise click.UsageError("Pass either MEMORY_ID or --inactive")

    if inactive:
        count = _run(config, lambda engine: engine.purge_inactive(user_id))
        console.print(f"[green]✓[/green] Purged {count} inactive memories")
        return

    assert memory_id is not None
    if _run(config, lambda engine: engine.purge(user_id, memory_id)):
        console.print(f"[green]✓[/green] Purged memory {memory_id}")
    else:
        console.print(f"[red]✗[/red] No memory {memory_id} for {user_id}")
        sys.exit(1)


@cli.command(name="config")
@click.pass_obj
def show_config(config: EngramConfig) -> None:
    """Print the effective configuration."""
    config_table = Table(title="Configuration")
    config_table.add_column("Setting", style="cyan")
    config_table.add_column("Value")

    rows: list[tuple[str, Any]] = [
        ("Data Directory", config.data_dir),
        ("Database", config.db_path),
        ("Log Level", config.log_level),
        ("", ""),
        ("Embedding Provider", config.embedding.provider.value),
        ("Embedding Model", config.embedding.model),
        ("Embedding Dimensions", config.embedding.embedding_dim),
        ("Cache Size", config.embedding.cache_size),
        ("", ""),
        ("Top K", config.retrieval.top_k),
        ("Min Similarity", config.retrieval.min_similarity),
        ("Context Budget", config.context.total_tokens),
        ("Staleness (days)", config.decay.staleness_days),
    ]
    for setting, value in rows:
        config_table.add_row(setting, str(value))

    console.print(config_table)


if __name__ == "__main__":
    cli()
