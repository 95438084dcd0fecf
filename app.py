"""
Command-line entry point.

Integrates all components into a complete RAG tool:

    python app.py ingest docs/ notes.txt [--provider-embeddings]
    python app.py query "how is the cache invalidated" [--top-k 4]
    python app.py chat "how is the cache invalidated" [--stream]
    python app.py docs
    python app.py remove notes.txt
    python app.py revectorize
    python app.py history [-n 10]
"""

import argparse
import asyncio
import json
import logging
import sys

# Setup must happen before other imports
from monitoring.logger import setup_logging

setup_logging()

from config import load_config, settings
from core.rag_engine import RAGEngine
from monitoring import start_metrics_server
from utils import display_names, validate_query, validate_top_k

logger = logging.getLogger(__name__)


def load_engine(args) -> RAGEngine:
    """Build the engine from an optional JSON config file over env settings."""
    cfg = settings
    if args.config:
        try:
            with open(args.config, 'r', encoding='utf-8') as f:
                cfg = load_config(json.load(f))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read config {args.config}: {e}")
            raise SystemExit(1)

    if cfg.ENABLE_METRICS:
        start_metrics_server(cfg.METRICS_PORT)

    return RAGEngine(cfg)


async def cmd_ingest(engine: RAGEngine, args) -> int:
    if args.provider_embeddings:
        engine.cfg = engine.cfg.model_copy(update={"USE_PROVIDER_EMBEDDINGS": True})

    task = engine.ingest_files_async(args.paths)
    await task

    print(f"Ingested {task.done}/{task.total} document(s)")
    for path in task.failed:
        print(f"  failed: {path}")
    return 0 if task.succeeded else 1


async def cmd_query(engine: RAGEngine, args) -> int:
    ok, error = validate_query(args.text, max_length=engine.cfg.MAX_QUERY_LENGTH)
    if not ok:
        print(f"Invalid query: {error}")
        return 1

    results = await engine.query_async(args.text, args.top_k)
    sources = engine.locate_sources(results)
    labels = display_names(s.path for s in sources)
    for i, (result, source) in enumerate(zip(results, sources), 1):
        print(
            f"{i}. {labels[source.path]} (lines {source.start_line}-{source.end_line}) "
            f"score={result.score:.3f}"
        )
        print(f"   {result.chunk.text[:200].strip()}")
    if not results:
        print("No matching passages")
    return 0


async def cmd_chat(engine: RAGEngine, args) -> int:
    ok, error = validate_query(args.text, max_length=engine.cfg.MAX_QUERY_LENGTH)
    if not ok:
        print(f"Invalid query: {error}")
        return 1

    if args.stream:

        def on_delta(fragment: str) -> None:
            sys.stdout.write(fragment)
            sys.stdout.flush()

        def on_retry(attempt: int) -> None:
            sys.stdout.write(f"\n[retrying, attempt {attempt + 1}; partial reply above discarded]\n")
            sys.stdout.flush()

        result = await engine.chat_with_rag_stream(args.text, on_delta, args.top_k, on_retry)
        sys.stdout.write("\n")
    else:
        result = await engine.chat_with_rag(args.text, args.top_k)
        print(result.text)

    if not result.ok:
        print(f"Request failed (status {result.status})")
        if result.raw and not args.stream:
            print(result.raw[:500])
        return 1
    return 0


async def cmd_docs(engine: RAGEngine, args) -> int:
    docs = engine.list_documents()
    if not docs:
        print("No documents indexed")
        return 0
    for path, doc in sorted(docs.items()):
        print(f"{path}  chunks={len(doc.chunk_ids)}  size={doc.size}  hash={doc.content_hash[:12]}")
    stats = engine.get_stats()
    print(f"\n{stats['vector_count']} chunk(s), {stats['disk_size_mb']} MB")
    return 0


async def cmd_remove(engine: RAGEngine, args) -> int:
    if engine.remove_document(args.path):
        print(f"Removed {args.path}")
        return 0
    print(f"Not indexed: {args.path}")
    return 1


async def cmd_revectorize(engine: RAGEngine, args) -> int:
    report = await engine.revectorize_store()
    print(
        f"Revectorized {report.chunks} chunk(s) in {report.documents} document(s); "
        f"{report.fallbacks} used local vectors"
    )
    return 0 if report.saved else 1


async def cmd_history(engine: RAGEngine, args) -> int:
    for entry in engine.history.recent(args.n):
        print(f"[{entry.ts}] ({entry.status}) {entry.user}")
    return 0


COMMANDS = {
    "ingest": cmd_ingest,
    "query": cmd_query,
    "chat": cmd_chat,
    "docs": cmd_docs,
    "remove": cmd_remove,
    "revectorize": cmd_revectorize,
    "history": cmd_history,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provider-agnostic RAG over local documents")
    parser.add_argument("--config", help="JSON file with camelCase config keys")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Index files or directories")
    ingest.add_argument("paths", nargs="+")
    ingest.add_argument(
        "--provider-embeddings",
        action="store_true",
        help="Embed chunks with the configured provider",
    )

    query = sub.add_parser("query", help="Show the top matching passages")
    query.add_argument("text")
    query.add_argument("--top-k", type=int, default=None)

    chat = sub.add_parser("chat", help="Answer a question from the documents")
    chat.add_argument("text")
    chat.add_argument("--top-k", type=int, default=None)
    chat.add_argument("--stream", action="store_true")

    sub.add_parser("docs", help="List indexed documents")

    remove = sub.add_parser("remove", help="Remove a document from the index")
    remove.add_argument("path")

    sub.add_parser("revectorize", help="Re-embed all chunks with the provider")

    history = sub.add_parser("history", help="Show recent chat history")
    history.add_argument("-n", type=int, default=10)

    return parser


def main(argv=None) -> int:
    """Main application."""
    args = build_parser().parse_args(argv)

    top_k = getattr(args, "top_k", None)
    if top_k is not None:
        ok, error = validate_top_k(top_k)
        if not ok:
            print(f"Invalid --top-k: {error}")
            return 1

    engine = load_engine(args)
    return asyncio.run(COMMANDS[args.command](engine, args))


if __name__ == "__main__":
    sys.exit(main())
