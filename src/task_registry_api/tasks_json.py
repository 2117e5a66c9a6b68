"""Import or export task definitions from the command line.

Usage:
    task-registry-json import tasks.json
    task-registry-json export tasks_export.json [--database-url URL]
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from .app.base import TaskStore
from .app.loader import export_tasks, iter_all_tasks, load_tasks_from_json
from .config.settings import Settings, get_settings
from .logging_setup import configure_logging
from .main import build_store


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Import or export task definitions as a JSON array file."
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="PostgreSQL connection URL (default: TASK_REGISTRY_DATABASE_URL).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Insert every task from a JSON file.")
    import_parser.add_argument("path", type=Path)

    export_parser = subparsers.add_parser("export", help="Write every stored task to a JSON file.")
    export_parser.add_argument("path", type=Path)
    export_parser.add_argument(
        "--page-size",
        type=int,
        default=100,
        help="Rows fetched per keyset page (default: 100).",
    )
    return parser.parse_args(argv)


def export_to_file(store: TaskStore, path: Path, *, page_size: int = 100) -> int:
    payload = export_tasks(iter_all_tasks(store, page_size=page_size))
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return len(payload)


def main(argv: list[str] | None = None, *, store: TaskStore | None = None) -> int:
    args = _parse_args(argv)
    settings: Settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    configure_logging(settings.log_level)
    task_store = store or build_store(settings)

    if args.command == "import":
        summary = load_tasks_from_json(args.path, task_store)
        print(f"Imported {summary.inserted} of {summary.total} task(s) from {args.path}.")
        for message in summary.errors:
            print(f"  {message}")
        return 1 if summary.errors else 0

    exported = export_to_file(task_store, args.path, page_size=args.page_size)
    print(f"Exported {exported} task(s) to {args.path}.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
