"""
`memorybank` command-line interface.

Commands
--------
memorybank init                                -- create or migrate the store
memorybank add DECISION "Use SQLite"           -- append an entry
memorybank add PROGRESS "Parser done" --phase execution --status done
memorybank edit 12 --content "..."             -- change mutable fields
memorybank edit 12 --append "Follow-up note"   -- append a dated update block
memorybank show 12                             -- print one entry
memorybank get DECISION --limit 5              -- newest entries of a category
memorybank get --phase planning                -- newest entries of a phase
memorybank get DECISION --since 2025-01-01 --until 2025-02-01
memorybank search "sqlite"                     -- substring search
memorybank semantic "storage engine choice"    -- semantic + keyword search
memorybank context "refactor the store" --budget 2000
memorybank stats                               -- counts and metrics summary
memorybank backfill                            -- embed entries lacking vectors
memorybank import-md ./memory-bank             -- import Markdown memory files
memorybank export-md ./memory-bank             -- export to Markdown files
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from typing import Optional

from .bank import MemoryBank
from .config import Config
from .log import setup_logger
from .models import CATEGORIES, PHASES, PROGRESS_STATUSES, MemoryEntry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _open_bank(args: argparse.Namespace) -> MemoryBank:
    """Build a MemoryBank from CLI options and open its store, or exit."""
    config = Config.load(
        args.config,
        db_path=args.db,
        embedding_backend=args.backend,
    )
    if not args.no_log_file:
        setup_logger(config.LOG_DIR)
    bank = MemoryBank(config)
    if not bank.open():
        print(f"Failed to open memory bank at {config.DB_PATH}: {bank.store.last_error}",
              file=sys.stderr)
        sys.exit(1)
    return bank


def _parse_meta(pairs: Optional[list[str]]) -> dict:
    meta: dict = {}
    for pair in pairs or []:
        if "=" not in pair:
            print(f"Invalid --meta value (expected key=value): {pair}", file=sys.stderr)
            sys.exit(2)
        key, value = pair.split("=", 1)
        meta[key.strip()] = value.strip()
    return meta


def _print_entries(entries: list[MemoryEntry], title: str) -> None:
    if not entries:
        print(f"  (no entries for: {title})")
        return
    print(f"\n{title}  [{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}]")
    print("-" * 60)
    for e in entries:
        first_line = e.content.strip().split("\n", 1)[0]
        if len(first_line) > 70:
            first_line = first_line[:67] + "..."
        flags = []
        if e.phase:
            flags.append(e.phase)
        if e.progress_status:
            flags.append(e.progress_status)
        if e.has_embedding:
            flags.append("vec")
        suffix = f"  ({', '.join(flags)})" if flags else ""
        print(f"  #{e.id:<5} {e.category:<17} {e.date}  {first_line}{suffix}")


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_init(args: argparse.Namespace) -> None:
    bank = _open_bank(args)
    try:
        migration = bank.store.last_migration
        print(f"Memory bank ready: {bank.store.location}")
        print(f"  Engine         : {bank.store.backend}")
        print(f"  Schema version : {bank.store.schema_version()}")
        print(f"  Entries        : {bank.store.count_entries()}")
        if migration is not None and migration.changed:
            print(f"  Migrations     : {'; '.join(migration.applied)}")
            if migration.backup_path:
                print(f"  Backup         : {migration.backup_path}")
    finally:
        bank.close()


def _cmd_add(args: argparse.Namespace) -> None:
    bank = _open_bank(args)
    try:
        entry = MemoryEntry(
            category=args.category,
            content=args.content,
            tag=args.tag or "",
            phase=args.phase,
            progress_status=args.status,
            metadata=_parse_meta(args.meta),
        )
        entry_id = bank.store.append_entry(entry)
        if entry_id is None:
            print("Failed to add entry (see log for details).", file=sys.stderr)
            sys.exit(1)
        print(f"Added {entry.category} entry #{entry_id}")
    finally:
        bank.close()


def _cmd_edit(args: argparse.Namespace) -> None:
    bank = _open_bank(args)
    try:
        if args.append:
            ok = bank.store.append_to_entry(args.id, args.append)
        else:
            fields = {}
            if args.content is not None:
                fields["content"] = args.content
            if args.tag is not None:
                fields["tag"] = args.tag
            if args.phase is not None:
                fields["phase"] = args.phase
            if args.status is not None:
                fields["progress_status"] = args.status
            if args.meta:
                fields["metadata"] = _parse_meta(args.meta)
            if not fields:
                print("Nothing to change. Pass --content, --tag, --phase, --status, "
                      "--meta or --append.", file=sys.stderr)
                sys.exit(2)
            ok = bank.store.update_entry(args.id, **fields)
        if not ok:
            print(f"Entry #{args.id} was not updated.", file=sys.stderr)
            sys.exit(1)
        print(f"Updated entry #{args.id}")
    finally:
        bank.close()


def _cmd_show(args: argparse.Namespace) -> None:
    from .retrieval.formatter import format_entry, format_metadata_yaml

    bank = _open_bank(args)
    try:
        entry = bank.store.get_entry_by_id(args.id)
        if entry is None:
            print(f"No entry #{args.id}", file=sys.stderr)
            sys.exit(1)
        print(format_metadata_yaml(entry))
        print(format_entry(entry))
    finally:
        bank.close()


def _cmd_get(args: argparse.Namespace) -> None:
    bank = _open_bank(args)
    try:
        if args.since or args.until:
            entries = bank.store.query_by_date_range(
                args.category, args.since or "0000", args.until or "9999", limit=args.limit,
            )
            title = f"{args.category or 'All'} entries in range"
        elif args.phase:
            entries = bank.store.query_by_phase(args.phase, args.limit,
                                                category=args.category)
            title = f"Phase '{args.phase}'"
        elif args.category:
            entries = bank.store.query_by_type(args.category, args.limit)
            title = f"{args.category.upper()} entries"
        else:
            entries = bank.store.get_recent(n=args.limit)
            title = "Recent entries"
        _print_entries(entries, title)
    finally:
        bank.close()


def _cmd_search(args: argparse.Namespace) -> None:
    bank = _open_bank(args)
    try:
        _print_entries(bank.store.full_text_search(args.text, args.limit),
                       f"Entries containing '{args.text}'")
    finally:
        bank.close()


def _cmd_semantic(args: argparse.Namespace) -> None:
    bank = _open_bank(args)
    try:
        hits = bank.search.semantic_search(args.query, limit=args.limit)
        if args.json:
            print(json.dumps([
                {"id": h.entry.id, "category": h.entry.category, "score": round(h.score, 4),
                 "semantic": round(h.semantic_score, 4), "keyword": round(h.keyword_score, 4),
                 "reason": h.reason, "content": h.entry.content}
                for h in hits
            ], indent=2))
            return
        if not hits:
            print(f"  (no results for: {args.query})")
            return
        print(f"\nSemantic results for '{args.query}'  [{len(hits)}]")
        print("-" * 60)
        for h in hits:
            first_line = h.entry.content.strip().split("\n", 1)[0][:60]
            print(f"  {h.score:.3f}  #{h.entry.id:<5} {h.entry.category:<17} "
                  f"{first_line}  [{h.reason}]")
    finally:
        bank.close()


def _cmd_context(args: argparse.Namespace) -> None:
    bank = _open_bank(args)
    try:
        options = {}
        if args.categories:
            options["include_categories"] = args.categories
        if args.max_age_days is not None:
            options["max_age_days"] = args.max_age_days
        if args.min_score is not None:
            options["min_relevance_threshold"] = args.min_score
        if args.no_semantic:
            options["use_semantic_search"] = False
        selection = bank.select_context(args.query, args.budget, **options)
        print(selection.formatted_text, end="")
        print(f"\n<!-- {selection.coverage_summary} -->")
    finally:
        bank.close()


def _cmd_stats(args: argparse.Namespace) -> None:
    bank = _open_bank(args)
    try:
        counts = bank.store.get_entry_counts()
        stats = {
            "location": bank.store.location,
            "engine": bank.store.backend,
            "schema_version": bank.store.schema_version(),
            "entries": sum(counts.values()),
            "by_category": counts,
            "with_embeddings": bank.store.count_entries_with_embeddings(),
            "embedder": bank.embedder.model_info() if bank.embedder else None,
            "metrics": bank.metrics.summary().to_dict(),
        }
        if args.json:
            print(json.dumps(stats, indent=2, default=str))
            return
        print("\nMemory Bank Status")
        print("=" * 40)
        print(f"  {'location':<20} {stats['location']}")
        print(f"  {'engine':<20} {stats['engine']}")
        print(f"  {'schema_version':<20} {stats['schema_version']}")
        print(f"  {'entries':<20} {stats['entries']}")
        for cat in CATEGORIES:
            if cat in counts:
                print(f"    {cat:<18} {counts[cat]}")
        print(f"  {'with_embeddings':<20} {stats['with_embeddings']}")
        m = stats["metrics"]
        print(f"  {'context_status':<20} {m['current_status']}")
        print(f"  {'avg_units_per_call':<20} {m['average_units_per_call']}")
        print(f"  {'avg_query_ms':<20} {m['average_query_time_ms']}")
        print()
    finally:
        bank.close()


def _cmd_backfill(args: argparse.Namespace) -> None:
    bank = _open_bank(args)
    stop = threading.Event()
    summary: dict = {}

    def _run() -> None:
        summary.update(bank.backfill(stop_event=stop, limit=args.limit, progress=True))

    worker = threading.Thread(target=_run, daemon=True)
    try:
        worker.start()
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        print("\nStopping after the current entry...")
        stop.set()
        worker.join()
    finally:
        bank.close()
    print(
        f"\nBackfill {'stopped' if summary.get('stopped') else 'complete'}:\n"
        f"  Pending:  {summary.get('total', 0)}\n"
        f"  Embedded: {summary.get('embedded', 0)}\n"
        f"  Errors:   {summary.get('errors', 0)}"
    )


def _cmd_import_md(args: argparse.Namespace) -> None:
    from .markdown import import_markdown_dir

    bank = _open_bank(args)
    try:
        result = import_markdown_dir(args.directory, bank.store)
    finally:
        bank.close()
    print(f"Imported {result.created} entries from {len(result.files)} files "
          f"({result.skipped} skipped)")
    for err in result.errors:
        print(f"  error: {err}", file=sys.stderr)
    if result.errors:
        sys.exit(1)


def _cmd_export_md(args: argparse.Namespace) -> None:
    from .markdown import export_markdown

    bank = _open_bank(args)
    try:
        result = export_markdown(bank.store, args.directory)
    finally:
        bank.close()
    print(f"Exported {result.exported} entries to {len(result.files)} files in {args.directory}")
    for err in result.errors:
        print(f"  error: {err}", file=sys.stderr)
    if result.errors:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _category(value: str) -> str:
    upper = value.upper()
    if upper not in CATEGORIES:
        raise argparse.ArgumentTypeError(
            f"invalid category {value!r} (choose from {', '.join(CATEGORIES)})"
        )
    return upper


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the `memorybank` argument parser."""
    parser = argparse.ArgumentParser(
        prog="memorybank",
        description="Persistent agent memory with semantic and budgeted retrieval",
    )
    parser.add_argument("--db", help="Database file (default from config)")
    parser.add_argument("--config", help="Path to a .memorybank.yaml file")
    parser.add_argument(
        "--backend", choices=["local", "openai", "hash", "none"],
        help="Embedding backend (default from config)",
    )
    parser.add_argument(
        "--no-log-file", dest="no_log_file", action="store_true",
        help="Do not write a log file",
    )
    subparsers = parser.add_subparsers(dest="cmd", metavar="COMMAND")
    subparsers.required = True

    # --- init ---
    init_p = subparsers.add_parser("init", help="Create or migrate the store")
    init_p.set_defaults(func=_cmd_init)

    # --- add ---
    add_p = subparsers.add_parser("add", help="Append an entry")
    add_p.add_argument("category", type=_category, help="Entry category")
    add_p.add_argument("content", help="Entry text")
    add_p.add_argument("--tag", help="Label (default CATEGORY:date)")
    add_p.add_argument("--phase", choices=PHASES)
    add_p.add_argument("--status", choices=PROGRESS_STATUSES)
    add_p.add_argument("--meta", action="append", metavar="KEY=VALUE",
                       help="Metadata field (repeatable)")
    add_p.set_defaults(func=_cmd_add)

    # --- edit ---
    edit_p = subparsers.add_parser("edit", help="Change an entry's mutable fields")
    edit_p.add_argument("id", type=int)
    edit_p.add_argument("--content")
    edit_p.add_argument("--tag")
    edit_p.add_argument("--phase", choices=PHASES)
    edit_p.add_argument("--status", choices=PROGRESS_STATUSES)
    edit_p.add_argument("--meta", action="append", metavar="KEY=VALUE",
                        help="Replace metadata with these fields (repeatable)")
    edit_p.add_argument("--append", help="Append a dated update block to the content")
    edit_p.set_defaults(func=_cmd_edit)

    # --- show ---
    show_p = subparsers.add_parser("show", help="Print one entry")
    show_p.add_argument("id", type=int)
    show_p.set_defaults(func=_cmd_show)

    # --- get ---
    get_p = subparsers.add_parser("get", help="List entries by category, phase or date")
    get_p.add_argument("category", nargs="?", type=_category)
    get_p.add_argument("--phase", choices=PHASES)
    get_p.add_argument("--since", help="Inclusive start (ISO-8601)")
    get_p.add_argument("--until", help="Exclusive end (ISO-8601)")
    get_p.add_argument("--limit", type=int, default=10)
    get_p.set_defaults(func=_cmd_get)

    # --- search ---
    search_p = subparsers.add_parser("search", help="Substring search over content")
    search_p.add_argument("text")
    search_p.add_argument("--limit", type=int, default=20)
    search_p.set_defaults(func=_cmd_search)

    # --- semantic ---
    sem_p = subparsers.add_parser("semantic", help="Semantic and keyword search")
    sem_p.add_argument("query")
    sem_p.add_argument("--limit", type=int, default=10)
    sem_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")
    sem_p.set_defaults(func=_cmd_semantic)

    # --- context ---
    ctx_p = subparsers.add_parser("context", help="Select entries for a unit budget")
    ctx_p.add_argument("query")
    ctx_p.add_argument("--budget", type=int, help="Unit budget (default from config)")
    ctx_p.add_argument("--categories", nargs="+", type=_category)
    ctx_p.add_argument("--max-age-days", dest="max_age_days", type=int)
    ctx_p.add_argument("--min-score", dest="min_score", type=float)
    ctx_p.add_argument("--no-semantic", dest="no_semantic", action="store_true",
                       help="Rank by keyword, recency and priority only")
    ctx_p.set_defaults(func=_cmd_context)

    # --- stats ---
    stats_p = subparsers.add_parser("stats", help="Show counts and metrics")
    stats_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")
    stats_p.set_defaults(func=_cmd_stats)

    # --- backfill ---
    bf_p = subparsers.add_parser("backfill", help="Embed entries that lack vectors")
    bf_p.add_argument("--limit", type=int)
    bf_p.set_defaults(func=_cmd_backfill)

    # --- import-md / export-md ---
    imp_p = subparsers.add_parser("import-md", help="Import Markdown memory files")
    imp_p.add_argument("directory")
    imp_p.set_defaults(func=_cmd_import_md)

    exp_p = subparsers.add_parser("export-md", help="Export entries to Markdown files")
    exp_p.add_argument("directory")
    exp_p.set_defaults(func=_cmd_export_md)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for the `memorybank` command.

    Parameters
    ----------
    argv:
        Argument list without the program name.  Defaults to sys.argv.
    """
    if not logging.root.handlers:
        logging.basicConfig(
            level=logging.WARNING,
            format="%(levelname)s  %(name)s  %(message)s",
        )

    parser = _build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
