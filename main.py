"""Command-line entry point for the TutorRAG pipeline."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from tutorrag.config import config
from tutorrag.errors import TutorRAGError
from tutorrag.models import IngestionStatus, SourceFilters, SourceType
from tutorrag.pipeline import RAGPipeline

if TYPE_CHECKING:
    from collections.abc import Sequence
    from logging import Logger

SOURCE_TYPE_CHOICES = [source_type.value for source_type in SourceType]


def _add_source_filter_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--no-audio", action="store_true", help="Skip lectures.")
    parser.add_argument("--no-photos", action="store_true", help="Skip photos.")
    parser.add_argument(
        "--no-textbooks", action="store_true", help="Skip textbooks."
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Build the CLI parser and read command-line arguments."""  # noqa: DOC201
    parser = argparse.ArgumentParser(
        description="Ingest class materials and ask grounded tutoring questions.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Index extracted source text.")
    ingest.add_argument("--type", choices=SOURCE_TYPE_CHOICES, required=True)
    ingest.add_argument("--source-id", required=True)
    ingest.add_argument("--class-id", required=True)
    ingest.add_argument(
        "--file",
        type=Path,
        required=True,
        help="UTF-8 text file holding the extracted text.",
    )
    ingest.add_argument("--title", help="Display title used in citations.")
    ingest.add_argument("--timestamp", help="Lecture timestamp, e.g. 00:12:30.")
    ingest.add_argument(
        "--background",
        action="store_true",
        help="Run through the retrying ingestion queue.",
    )

    retrieve = subparsers.add_parser("retrieve", help="Show retrieved context.")
    retrieve.add_argument("--class-id", required=True)
    retrieve.add_argument("query")
    _add_source_filter_flags(retrieve)

    chat = subparsers.add_parser("chat", help="Ask the tutor a question.")
    chat.add_argument("--user-id", required=True)
    chat.add_argument("--class-id", required=True)
    chat.add_argument("--conversation-id")
    chat.add_argument("message")
    _add_source_filter_flags(chat)

    status = subparsers.add_parser("status", help="List ingestion records.")
    status.add_argument("--class-id", required=True)
    status.add_argument(
        "--status", choices=[value.value for value in IngestionStatus]
    )

    delete = subparsers.add_parser("delete-source", help="Remove an ingested source.")
    delete.add_argument("--type", choices=SOURCE_TYPE_CHOICES, required=True)
    delete.add_argument("--source-id", required=True)

    return parser.parse_args(argv)


def source_filters_from_args(args: argparse.Namespace) -> SourceFilters:
    return SourceFilters(
        include_audio=not args.no_audio,
        include_photos=not args.no_photos,
        include_textbooks=not args.no_textbooks,
    )


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))  # noqa: T201


def run_command(
    pipeline: RAGPipeline, args: argparse.Namespace, logger: Logger
) -> int:
    """Dispatch one subcommand against the pipeline and return its exit code."""  # noqa: DOC201
    if args.command == "ingest":
        raw_text = args.file.read_text(encoding="utf-8")
        metadata = {"title": args.title, "timestamp": args.timestamp}
        if args.background:
            future = pipeline.submit_ingest(
                args.type, args.source_id, args.class_id, raw_text, metadata
            )
            record = future.result()
        else:
            record = pipeline.ingest(
                args.type, args.source_id, args.class_id, raw_text, metadata
            )
        _print_json({
            "source_id": record.source_id,
            "status": record.status.value,
            "chunk_count": record.chunk_count,
            "degraded": record.degraded,
            "error": record.error,
        })
        return 0 if record.status is IngestionStatus.COMPLETE else 1

    if args.command == "retrieve":
        context = pipeline.retrieve(
            args.class_id, args.query, source_filters_from_args(args)
        )
        _print_json({
            "context": context.context_text,
            "citations": [citation.to_dict() for citation in context.citations],
            "degraded": context.degraded,
        })
        return 0

    if args.command == "chat":
        result = pipeline.chat(
            args.user_id,
            args.class_id,
            args.message,
            conversation_id=args.conversation_id,
            source_filters=source_filters_from_args(args),
        )
        _print_json(result.to_dict())
        return 0

    if args.command == "status":
        records = pipeline.tracker.list_records(
            args.class_id,
            status=IngestionStatus(args.status) if args.status else None,
        )
        _print_json([
            {
                "type": record.source_type.value,
                "source_id": record.source_id,
                "title": record.title,
                "status": record.status.value,
                "chunk_count": record.chunk_count,
                "error": record.error,
            }
            for record in records
        ])
        return 0

    if args.command == "delete-source":
        deleted = pipeline.delete_source(args.type, args.source_id)
        logger.info("Removed %d chunks", deleted)
        return 0

    logger.error("Unknown command: %s", args.command)
    return 2


def main(argv: Sequence[str] | None = None) -> int:
    """Validate configuration and run one pipeline command."""  # noqa: DOC201
    args = parse_args(argv)

    config.setup_logging()
    logger = config.get_logger(__name__)

    try:
        config.validate()
    except ValueError:
        logger.exception("Configuration invalid")
        return 1

    pipeline = RAGPipeline()
    try:
        return run_command(pipeline, args, logger)
    except TutorRAGError:
        logger.exception("Command %s failed", args.command)
        return 1
    except OSError:
        logger.exception("Unable to read input for %s", args.command)
        return 1
    finally:
        pipeline.close()


if __name__ == "__main__":
    sys.exit(main())
