"""
cli.py - command-line entry point

Usage:
    lernwelt list                          # all tasks, newest first
    lernwelt list --grade "Klasse 2"       # filtered
    lernwelt filters                       # grade / subject / topic tree
    lernwelt import page1.jpg page2.png    # analyze and store pages
    lernwelt import --test-mode            # add 1-3 simulated tasks
    lernwelt audio --test-mode             # generate missing narration audio
    lernwelt clear --test-data             # remove simulated tasks only
    lernwelt backup data/backup.sqlite3    # online SQLite backup
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.tree import Tree

from .audio.cache import AudioCache
from .catalog.task_catalog import TaskCatalog
from .config import AppConfig, config as default_config
from .db.schema import FilterOptions, TaskRecord
from .errors import LernweltError
from .repository.factory import RepositoryFactory
from .services.ai.backoff import backoff_delays
from .services.ai.gemini import GeminiProvider
from .services.ai.mock_provider import MockProvider
from .services.speech import READY, AudioStatusTracker, SpeechService
from .services.uploads import UploadPipeline

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """Rich console logging; call once before the first log line."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _task_table(tasks: List[TaskRecord], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Klasse")
    table.add_column("Fach")
    table.add_column("Thema")
    table.add_column("Titel")
    table.add_column("Test", justify="center")
    for task in tasks:
        table.add_row(
            task.display_id or task.id,
            task.grade,
            task.subject,
            task.sub_subject,
            task.task_title,
            "✓" if task.is_test_data else "",
        )
    return table


async def cmd_list(catalog: TaskCatalog, args: argparse.Namespace) -> int:
    await catalog.load()
    options = FilterOptions(grade=args.grade, subject=args.subject, sub_subject=args.sub_subject)
    tasks = catalog.filter_local(options)
    console.print(_task_table(tasks, f"{len(tasks)} Aufgaben"))
    return 0


async def cmd_filters(catalog: TaskCatalog, args: argparse.Namespace) -> int:
    await catalog.load()
    tree = Tree("Bibliothek")
    for grade in catalog.get_unique_grades():
        grade_node = tree.add(f"[bold]{grade}[/bold]")
        for subject in catalog.get_unique_subjects(grade):
            subject_node = grade_node.add(subject)
            for sub_subject in catalog.get_unique_sub_subjects(grade, subject):
                subject_node.add(f"[dim]{sub_subject}[/dim]")
    console.print(tree)
    return 0


async def cmd_import(catalog: TaskCatalog, args: argparse.Namespace, cfg: AppConfig) -> int:
    test_mode = args.test_mode or cfg.test_mode
    if not test_mode and not args.paths:
        console.print("[red]No files given[/red]")
        return 2
    if not test_mode and not cfg.gemini_api_key:
        console.print("[red]LERNWELT_GEMINI_API_KEY is not set (use --test-mode for simulated tasks)[/red]")
        return 2

    analyzer = MockProvider() if test_mode else GeminiProvider.from_config(cfg)
    pipeline = UploadPipeline(
        catalog,
        analyzer,
        test_mode=test_mode,
        retry_delays=backoff_delays(cfg.ai_max_retries),
    )
    report = await pipeline.process_files(args.paths)

    for notice in report.notices:
        console.print(f"[yellow]{notice.message}[/yellow]")
    if report.added:
        console.print(_task_table(report.added, f"{len(report.added)} neue Aufgaben"))
    return 0 if report.added or not report.notices else 1


def build_audio_cache(catalog: TaskCatalog, cfg: AppConfig) -> AudioCache:
    return AudioCache(catalog, capacity=cfg.audio_cache_capacity)


async def cmd_audio(catalog: TaskCatalog, args: argparse.Namespace, cfg: AppConfig) -> int:
    test_mode = args.test_mode or cfg.test_mode
    if not test_mode and not cfg.gemini_api_key:
        console.print("[red]LERNWELT_GEMINI_API_KEY is not set (use --test-mode for placeholder audio)[/red]")
        return 2

    await catalog.load()
    tasks = catalog.get_all()
    speaker = MockProvider() if test_mode else GeminiProvider.from_config(cfg)
    tracker = AudioStatusTracker(
        SpeechService(build_audio_cache(catalog, cfg), speaker), pause=args.pause
    )
    statuses = await tracker.check(tasks)
    already = sum(1 for s in statuses.values() if s == READY)
    generated = await tracker.generate_missing(tasks)
    failed = len(tasks) - already - generated
    console.print(f"Audio: {already} ready, {generated} generated, {failed} failed")
    return 0 if failed == 0 else 1


async def cmd_clear(catalog: TaskCatalog, args: argparse.Namespace) -> int:
    await catalog.load()
    before = len(catalog.get_all())
    remaining = await catalog.clear(only_test_data=args.test_data)
    console.print(f"Removed {before - len(remaining)} tasks, {len(remaining)} remain")
    return 0


async def cmd_backup(catalog: TaskCatalog, args: argparse.Namespace) -> int:
    await catalog.load()
    repository = catalog.repository
    export = getattr(repository, "export_database", None)
    if export is None:
        console.print(
            f"[red]Backup is only supported for sqlite (active: {repository.repository_type.value})[/red]"
        )
        return 2
    path = await export(Path(args.dest))
    console.print(f"Backup written to [bold]{path}[/bold]")
    return 0


async def run(args: argparse.Namespace, cfg: AppConfig) -> int:
    factory = RepositoryFactory(cfg)
    catalog = TaskCatalog(
        factory,
        repository_type=args.repository or cfg.repository_type,
        legacy_type=cfg.legacy_repository_type,
    )
    try:
        if args.command == "list":
            return await cmd_list(catalog, args)
        if args.command == "filters":
            return await cmd_filters(catalog, args)
        if args.command == "import":
            return await cmd_import(catalog, args, cfg)
        if args.command == "audio":
            return await cmd_audio(catalog, args, cfg)
        if args.command == "clear":
            return await cmd_clear(catalog, args)
        if args.command == "backup":
            return await cmd_backup(catalog, args)
        return 2
    finally:
        await factory.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lernwelt",
        description="Homework task library - storage and import tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--repository",
        choices=["local", "sqlite", "supabase"],
        help="Storage backend (default: LERNWELT_REPOSITORY or sqlite)",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: LERNWELT_LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    parser_list = subparsers.add_parser("list", help="List tasks")
    parser_list.add_argument("--grade")
    parser_list.add_argument("--subject")
    parser_list.add_argument("--sub-subject", dest="sub_subject")

    subparsers.add_parser("filters", help="Show grade / subject / topic tree")

    parser_import = subparsers.add_parser("import", help="Analyze and store page images")
    parser_import.add_argument("paths", nargs="*", type=Path)
    parser_import.add_argument("--test-mode", action="store_true", help="Generate simulated tasks")

    parser_audio = subparsers.add_parser("audio", help="Generate missing narration audio")
    parser_audio.add_argument("--test-mode", action="store_true", help="Use placeholder tones")
    parser_audio.add_argument(
        "--pause", type=float, default=0.5, help="Seconds between synthesis calls (default: 0.5)"
    )

    parser_clear = subparsers.add_parser("clear", help="Delete tasks and audio")
    parser_clear.add_argument("--test-data", action="store_true", help="Only simulated tasks")

    parser_backup = subparsers.add_parser("backup", help="Copy the SQLite database")
    parser_backup.add_argument("dest", type=Path)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    cfg = default_config
    setup_logging(args.log_level or cfg.log_level)
    try:
        return asyncio.run(run(args, cfg))
    except LernweltError as e:
        console.print(f"[red]{e.kind}: {e.message}[/red]")
        return 1
    except KeyboardInterrupt:
        console.print("\nAborted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
