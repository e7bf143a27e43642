# main.py
import argparse
import json
import sys
import time
from dotenv import load_dotenv

# Auto-load .env early so embedding keys are available to the shared provider
load_dotenv()

from loguru import logger

from config_home import SettingsStore
from logging_setup import configure_logging
from semindex import IndexService, LibraryFS, LibraryWatcher, SemIndexError


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _parse_value(raw: str):
    """CLI values: JSON when it parses (true, 12, ["md"]), else the plain string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _config_patch(pairs) -> dict:
    """['search.top_k=5', 'enabled=true'] → {'search': {'top_k': 5}, 'enabled': True}"""
    patch: dict = {}
    for item in pairs or []:
        if "=" not in item:
            raise SystemExit(f"config: expected KEY=VALUE, got '{item}'")
        key, raw = item.split("=", 1)
        node = patch
        parts = key.strip().split(".")
        for p in parts[:-1]:
            node = node.setdefault(p, {})
        node[parts[-1]] = _parse_value(raw)
    return patch


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="semindex",
        description="semindex - local semantic search index for a folder of text documents",
    )
    parser.add_argument("--root", required=True, help="Library root directory")
    parser.add_argument("--data-dir", help="Index data directory (default: <home>/plugin-data/<libraryKey>)")
    parser.add_argument("--settings", help="Settings JSON file (default: <home>/settings.json)")
    parser.add_argument("--log-level", help="TRACE/DEBUG/INFO/WARNING (env: SEMINDEX_LOG_LEVEL)")
    parser.add_argument("--log-file", help="Rotating log file or directory (default: <home>/logs)")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show index status and size")
    p = sub.add_parser("config", help="Show or update the library configuration")
    p.add_argument("set", nargs="*", metavar="KEY=VALUE", help="e.g. enabled=true search.top_k=5")
    sub.add_parser("reindex", help="Full rebuild")
    p = sub.add_parser("update", help="Incrementally (re)index one file")
    p.add_argument("path", help="Library-relative path")
    p.add_argument("--force", action="store_true", help="Re-embed even if unchanged")
    p = sub.add_parser("delete", help="Remove one file from the index (re-indexed instead if it still exists)")
    p.add_argument("path", help="Library-relative path")
    sub.add_parser("clear", help="Replace the index with an empty one")
    p = sub.add_parser("search", help="Semantic search")
    p.add_argument("query")
    p.add_argument("--top-k", type=int)
    p.add_argument("--min-score", type=float)
    p.add_argument("--context", type=int, dest="context_max_chars", help="Max snippet characters")
    p.add_argument("--json", action="store_true", help="Print hits as JSON")
    p = sub.add_parser("explain", help="Show the context snippet for one chunk id")
    p.add_argument("hit_id")
    sub.add_parser("watch", help="Watch the library and index changes until Ctrl+C")
    return parser


def _run(args, svc: IndexService) -> int:
    cmd = args.command
    if cmd == "status":
        st = svc.ensure_loaded()
        _print_json({
            "libraryKey": svc.library_key,
            "dataDir": svc.data_dir,
            "status": svc.get_status().to_dict(),
            "files": len(st.meta.files) if st else 0,
            "chunks": len(st.meta.chunks) if st else 0,
            "dims": st.meta.dims if st else 0,
            "deadRatio": svc.dead_ratio(),
        })
    elif cmd == "config":
        cfg = svc.set_config(_config_patch(args.set)) if args.set else svc.get_config()
        d = cfg.to_dict()
        if d["embedding"].get("api_key"):
            d["embedding"]["api_key"] = "******"
        _print_json(d)
    elif cmd == "reindex":
        _print_json(svc.reindex())
    elif cmd == "update":
        _print_json(svc.upsert_file(args.path, force=args.force))
    elif cmd == "delete":
        _print_json(svc.delete_file(args.path))
    elif cmd == "clear":
        _print_json(svc.clear())
    elif cmd == "search":
        hits = svc.search(args.query, top_k=args.top_k, min_score=args.min_score,
                          context_max_chars=args.context_max_chars)
        if args.json:
            _print_json([h.to_dict() for h in hits])
            return 0
        if not hits:
            print("(no results)")
        for i, h in enumerate(hits, start=1):
            head = f" · {h.heading}" if h.heading else ""
            print(f"[{i}] {h.score:.3f}  {h.relative}:{h.start_line}-{h.end_line}{head}")
            print(h.snippet)
            print()
    elif cmd == "explain":
        _print_json(svc.explain(args.hit_id).to_dict())
    elif cmd == "watch":
        if not svc.get_config().enabled:
            print("[error] indexing is disabled for this library (semindex config enabled=true)")
            return 2
        with LibraryWatcher(svc):
            print(f"Watching {svc.fs.root} (Ctrl+C to stop)")
            try:
                while True:
                    time.sleep(1)
            except KeyboardInterrupt:
                if svc.cancel():
                    print("cancelling the running update…")
                print("bye!")
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, log_file=args.log_file)

    fs = LibraryFS(args.root)
    store = SettingsStore(args.settings) if args.settings else SettingsStore()
    svc = IndexService(fs, store, data_dir=args.data_dir)
    try:
        return _run(args, svc)
    except SemIndexError as e:
        logger.debug("command '{}' failed: {}", args.command, e)
        print(f"[error] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
