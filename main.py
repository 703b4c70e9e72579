"""Command-line entry point for the chatbase knowledge base assistant."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from chatbase.config import config
from chatbase.conversation import ConversationManager
from chatbase.conversation_store import SQLiteConversationStore
from chatbase.errors import ChatbaseError
from chatbase.pipeline import RAGPipeline

if TYPE_CHECKING:
    from collections.abc import Sequence
    from logging import Logger

DEFAULT_SESSION = "cli"


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Build the CLI parser and read command-line arguments."""  # noqa: DOC201
    parser = argparse.ArgumentParser(
        description="Ingest documents and ask questions about them.",
    )
    parser.add_argument(
        "--backend",
        choices=["faiss", "sqlite"],
        default=None,
        help="Vector store backend (default: VECTOR_BACKEND or faiss).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Add PDF, Markdown or TXT files.")
    ingest.add_argument("paths", nargs="+", type=Path)

    search = subparsers.add_parser("search", help="Show the passages matching a query.")
    search.add_argument("query")
    search.add_argument("--threshold", type=float, default=None)
    search.add_argument("--top-k", type=int, default=None)

    ask = subparsers.add_parser("ask", help="Answer a question from the documents.")
    ask.add_argument("question")
    ask.add_argument("--session", default=DEFAULT_SESSION)
    ask.add_argument("--conversation", default=None)
    ask.add_argument(
        "--stream",
        action="store_true",
        help="Print the answer as it is generated.",
    )

    subparsers.add_parser("list", help="List stored document chunks.")

    delete = subparsers.add_parser("delete", help="Delete document chunks by id.")
    delete.add_argument("ids", nargs="+")

    export = subparsers.add_parser("export", help="Export a conversation.")
    export.add_argument("conversation_id")
    export.add_argument("--format", choices=["json", "markdown"], default="markdown")

    return parser.parse_args(argv)


def build_pipeline(backend: str | None) -> RAGPipeline:
    return RAGPipeline(vector_backend=backend)


def build_manager(pipeline: RAGPipeline) -> ConversationManager:
    return ConversationManager(pipeline)


async def run_ingest(pipeline: RAGPipeline, paths: Sequence[Path], logger: Logger) -> int:
    failures = 0
    for path in paths:
        if not path.exists():
            logger.error("File not found: %s", path)
            failures += 1
            continue
        documents = await pipeline.process_document(path)
        print(f"{path.name}: {len(documents)} chunks stored")  # noqa: T201
    return 1 if failures else 0


async def run_search(
    pipeline: RAGPipeline,
    query: str,
    threshold: float | None,
    top_k: int | None,
) -> int:
    results = await pipeline.search(query, threshold=threshold, top_k=top_k)
    if not results:
        print("No matching passages.")  # noqa: T201
    for index, result in enumerate(results, start=1):
        source = result.metadata.get("source", "Unknown")
        print(f"[{index}] {source} ({result.similarity:.3f})")  # noqa: T201
        print(f"    {result.content[:200]}")  # noqa: T201
    return 0


async def run_ask(manager: ConversationManager, args: argparse.Namespace) -> int:
    if not args.stream:
        response = await manager.ask(
            args.question, args.session, conversation_id=args.conversation
        )
        print(response.answer)  # noqa: T201
        print_sources([result.metadata.get("source", "Unknown") for result in response.sources])
        await manager.wait_for_persistence()
        return 0

    status = 0
    sources: list[str] = []
    async for event in manager.stream(
        args.question, args.session, conversation_id=args.conversation
    ):
        if event.type == "sources":
            sources = [result.metadata.get("source", "Unknown") for result in event.data]
        elif event.type == "token":
            print(event.data, end="", flush=True)  # noqa: T201
        elif event.type == "done":
            print()  # noqa: T201
            print_sources(sources)
        elif event.type == "error":
            print()  # noqa: T201
            print(f"Error: {event.data['message']}", file=sys.stderr)  # noqa: T201
            status = 1
    await manager.wait_for_persistence()
    return status


def print_sources(sources: list[str]) -> None:
    if sources:
        print("\nSources: " + ", ".join(dict.fromkeys(sources)))  # noqa: T201


async def run_list(pipeline: RAGPipeline) -> int:
    documents = await pipeline.list_all()
    for document in documents:
        source = document.metadata.get("source", "Unknown")
        print(f"{document.id}  {source}  {document.created_at}")  # noqa: T201
    print(f"{len(documents)} documents")  # noqa: T201
    return 0


async def run_command(args: argparse.Namespace, logger: Logger) -> int:
    if args.command == "export":
        store = SQLiteConversationStore()
        try:
            print(store.export_conversation(args.conversation_id, args.format))  # noqa: T201
        except ValueError:
            logger.exception("Export failed")
            return 1
        return 0

    pipeline = build_pipeline(args.backend)
    if args.command == "ingest":
        return await run_ingest(pipeline, args.paths, logger)
    if args.command == "search":
        return await run_search(pipeline, args.query, args.threshold, args.top_k)
    if args.command == "ask":
        return await run_ask(build_manager(pipeline), args)
    if args.command == "list":
        return await run_list(pipeline)
    if args.command == "delete":
        removed = await pipeline.delete_many(args.ids)
        print(f"Deleted {removed} documents")  # noqa: T201
        return 0

    logger.error("Unknown command: %s", args.command)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """Validate configuration and run the requested command."""  # noqa: DOC201
    args = parse_args(argv)

    config.setup_logging()
    logger = config.get_logger(__name__)

    if args.command not in {"list", "delete", "export"}:
        try:
            config.validate()
        except ValueError:
            logger.exception("Configuration invalid")
            return 1

    try:
        return asyncio.run(run_command(args, logger))
    except KeyboardInterrupt:
        logger.info("chatbase stopped by user")
        return 0
    except ChatbaseError as exc:
        logger.exception("Command failed (retryable=%s)", exc.retryable)
        return 1


if __name__ == "__main__":
    sys.exit(main())
