"""
`semantic-index` command-line interface.

Operates on the persisted snapshot of the current directory.

Commands
--------
semantic-index status                          -- show snapshot summary
semantic-index search "<query>"                -- semantic search
semantic-index search "<query>" --top-k 5
semantic-index search "<query>" --kind function --scope src/auth
semantic-index related <file>                  -- files related to <file>
semantic-index reset                           -- delete the snapshot
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from datetime import datetime
from typing import Optional

from .config import Config
from .errors import NotFound, SemanticIndexError
from .index.persistence import SnapshotStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _project_root() -> str:
    """Return the current working directory as project root."""
    return os.getcwd()


def _load_config(args: argparse.Namespace, project_root: str) -> Config:
    return Config.load(getattr(args, "config", None), project_root=project_root)


def _snapshot_store(config: Config, project_root: str) -> SnapshotStore:
    return SnapshotStore.for_project(project_root, config.STATE_DIR)


def _require_snapshot(config: Config, project_root: str) -> None:
    """Exit with an informative message if nothing has been indexed."""
    stats = _snapshot_store(config, project_root).stats()
    if not stats["model_version"]:
        print("No semantic index found for this project.", file=sys.stderr)
        sys.exit(1)


def _open_session(config: Config, project_root: str):
    from .session import ProjectSession
    return ProjectSession(project_root, config=config).open()


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_status(args: argparse.Namespace) -> None:
    """Print the snapshot summary."""
    project_root = _project_root()
    config = _load_config(args, project_root)
    stats = _snapshot_store(config, project_root).stats()
    if not stats["model_version"]:
        print("No semantic index found for this project.")
        return
    saved = datetime.fromtimestamp(stats["saved_at"]).isoformat(timespec="seconds")
    print("\nSemantic Index Status")
    print("=" * 40)
    print(f"  {'model_version':<20} {stats['model_version']}")
    print(f"  {'files':<20} {stats['file_count']}")
    print(f"  {'spans':<20} {stats['span_count']}")
    print(f"  {'entries':<20} {stats['entry_count']}")
    print(f"  {'version':<20} {stats['version']}")
    print(f"  {'saved_at':<20} {saved}")
    print()


def _cmd_search(args: argparse.Namespace) -> None:
    """Semantic search over the snapshot."""
    project_root = _project_root()
    config = _load_config(args, project_root)
    _require_snapshot(config, project_root)

    session = _open_session(config, project_root)
    try:
        t0 = time.perf_counter()
        response = session.search_code(
            args.query,
            project_scope=args.scope or None,
            top_k=args.top_k,
            kind_filter=args.kind or None,
        )
        elapsed_ms = (time.perf_counter() - t0) * 1000
    finally:
        session.close(save=False)

    if response.reason is not None:
        print(f"Search failed: {response.reason}", file=sys.stderr)
        sys.exit(1)
    if not response:
        print(f"No results found for: {args.query!r}")
        return

    print(f"\nSearch results for: {args.query!r}  [{len(response)} result(s)]")
    print("-" * 70)
    for i, r in enumerate(response, 1):
        label = f"{r.span_kind.value}: {r.name}" if r.name else r.span_kind.value
        print(f"\n  [{i}] {label}")
        print(f"       File   : {r.file_path}:{r.start_line}-{r.end_line}")
        print(f"       Score  : {r.score:.4f}  (similarity {r.similarity:.4f})")
        snippet_lines = r.content.splitlines()
        if snippet_lines:
            preview = "\n         ".join(snippet_lines[:5])
            if len(snippet_lines) > 5:
                preview += f"\n         ... ({len(snippet_lines) - 5} more lines)"
            print(f"       Code   :\n         {preview}")

    print(f"\n  Search time: {elapsed_ms:.1f}ms")


def _cmd_related(args: argparse.Namespace) -> None:
    """List files related to a given file."""
    project_root = _project_root()
    config = _load_config(args, project_root)
    _require_snapshot(config, project_root)

    session = _open_session(config, project_root)
    try:
        files = session.suggest_related_files(args.file.replace("\\", "/"), limit=args.limit)
    except NotFound:
        print(f"File is not indexed: {args.file}", file=sys.stderr)
        sys.exit(1)
    finally:
        session.close(save=False)

    if not files:
        print(f"No related files found for: {args.file}")
        return
    print(f"\nFiles related to {args.file}  [{len(files)} result(s)]")
    print("-" * 60)
    for f in files:
        print(f"  {f.ai_relevance:>7.4f}  {f.path}")


def _cmd_reset(args: argparse.Namespace) -> None:
    """Delete the snapshot for the current project."""
    project_root = _project_root()
    config = _load_config(args, project_root)
    _snapshot_store(config, project_root).clear()
    print(f"Semantic index cleared for {project_root}")


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="semantic-index",
        description="Semantic code index: embedding search over a project's code spans",
    )
    parser.add_argument("--config", default=None, help="Path to a config YAML file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="cmd", metavar="COMMAND")
    subparsers.required = True

    # --- status ---
    status_p = subparsers.add_parser("status", help="Show index summary")
    status_p.set_defaults(func=_cmd_status)

    # --- search ---
    search_p = subparsers.add_parser("search", help="Semantic search over indexed code")
    search_p.add_argument("query", help="Natural-language or code query")
    search_p.add_argument("--top-k", type=int, default=10, dest="top_k",
                          help="Number of results to return (default: 10)")
    search_p.add_argument("--kind", action="append", default=[],
                          help="Restrict to a span kind (repeatable)")
    search_p.add_argument("--scope", action="append", default=[],
                          help="Restrict to a path prefix or glob (repeatable)")
    search_p.set_defaults(func=_cmd_search)

    # --- related ---
    related_p = subparsers.add_parser("related", help="Suggest files related to a file")
    related_p.add_argument("file", help="Project-relative file path")
    related_p.add_argument("--limit", type=int, default=10,
                           help="Number of files to return (default: 10)")
    related_p.set_defaults(func=_cmd_related)

    # --- reset ---
    reset_p = subparsers.add_parser("reset", help="Delete the persisted index")
    reset_p.set_defaults(func=_cmd_reset)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for the `semantic-index` console script.

    Parameters
    ----------
    argv:
        Argument list.  Defaults to sys.argv if None.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Configure logging if not already configured
    if not logging.root.handlers:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.WARNING,
            format="%(levelname)s  %(name)s  %(message)s",
        )

    try:
        args.func(args)
    except SemanticIndexError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
