"""Command line entry point for the feedback engine.

Uploads and re-ingests source PDFs, links them to skills, and generates
source-grounded feedback for a student response.

Usage:
    python -m feedback_engine.main ingest paper.pdf --skill critical-thinking
    python -m feedback_engine.main feedback --skill critical-thinking \
        --question "..." --response "..."
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from pydantic import ValidationError

from feedback_engine.config import Settings
from feedback_engine.errors import DimensionMismatch, FeedbackEngineError
from feedback_engine.models import FeedbackQuery
from feedback_engine.rag.chunk_store import ChunkStore
from feedback_engine.rag.cos_client import COSClient
from feedback_engine.rag.embeddings import EmbeddingClient
from feedback_engine.rag.generator import GeneratorClient
from feedback_engine.rag.pipeline import FeedbackPipeline, IngestionPipeline

logger = logging.getLogger(__name__)


def get_settings() -> Settings:
    """Get application settings.

    Returns:
        Settings instance loaded from environment variables.
    """
    load_dotenv()
    return Settings.from_env()


def get_store(settings: Settings) -> ChunkStore:
    return ChunkStore(settings.chunk_store_path or None, settings.embedding_dim)


def get_pipelines(
    settings: Settings, store: ChunkStore
) -> Tuple[IngestionPipeline, FeedbackPipeline]:
    """Build both pipelines over one store and one embedding client."""
    embed = EmbeddingClient(settings)
    ingestion = IngestionPipeline(settings, store=store, embed=embed, cos=COSClient(settings))
    feedback = FeedbackPipeline(
        settings, store=store, embed=embed, gen=GeneratorClient(settings)
    )
    return ingestion, feedback


def cmd_ingest(args: argparse.Namespace, settings: Settings) -> int:
    ingestion, _ = get_pipelines(settings, get_store(settings))
    with open(args.pdf, "rb") as f:
        data = f.read()
    doc = ingestion.upload_source(
        data,
        filename=os.path.basename(args.pdf),
        title=args.title,
        authors=args.authors,
        publication_year=args.year,
        skill_ids=args.skill or [],
    )
    print(f"{doc.id}\t{doc.processing_status.value}\t{len(doc.chunks)} chunks\t{doc.title}")
    return 0


def cmd_reingest(args: argparse.Namespace, settings: Settings) -> int:
    ingestion, _ = get_pipelines(settings, get_store(settings))
    doc = ingestion.ingest(args.document_id, preempt=args.preempt)
    print(f"{doc.id}\t{doc.processing_status.value}\t{len(doc.chunks)} chunks")
    return 0


def cmd_link(args: argparse.Namespace, settings: Settings) -> int:
    store = get_store(settings)
    if args.remove:
        store.unlink(args.skill, args.document_id)
    else:
        store.link(args.skill, args.document_id)
    return 0


def cmd_sources(args: argparse.Namespace, settings: Settings) -> int:
    store = get_store(settings)
    docs = store.sources_for_skill(args.skill) if args.skill else store.documents()
    for doc in docs:
        line = f"{doc.id}\t{doc.processing_status.value}\t{len(doc.chunks)}\t{doc.title}"
        if doc.last_error:
            line += f"\t({doc.last_error})"
        print(line)
    return 0


def cmd_feedback(args: argparse.Namespace, settings: Settings) -> int:
    _, feedback = get_pipelines(settings, get_store(settings))
    response = args.response
    if response == "-":
        response = sys.stdin.read()
    result = feedback.generate_feedback(
        FeedbackQuery(
            student_response=response,
            skill_id=args.skill,
            question=args.question,
            context=args.context,
        )
    )
    if args.json:
        print(json.dumps(result.model_dump(), ensure_ascii=False, indent=2))
        return 0
    print(result.feedback)
    print(f"\nConfidence: {result.confidence}%")
    for i, source in enumerate(result.sources, start=1):
        author = f" by {source.author}" if source.author else ""
        print(f"[{i}] {source.title}{author}, p.{source.page} ({source.relevance}%)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="feedback-engine")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("ingest", help="upload and ingest a source PDF")
    p.add_argument("pdf")
    p.add_argument("--title")
    p.add_argument("--authors")
    p.add_argument("--year", type=int)
    p.add_argument("--skill", action="append", help="skill id to link (repeatable)")
    p.set_defaults(func=cmd_ingest)

    p = sub.add_parser("reingest", help="re-run ingestion for a stored source")
    p.add_argument("document_id")
    p.add_argument("--preempt", action="store_true", help="supersede a run still in progress")
    p.set_defaults(func=cmd_reingest)

    p = sub.add_parser("link", help="link or unlink a source and a skill")
    p.add_argument("skill")
    p.add_argument("document_id")
    p.add_argument("--remove", action="store_true")
    p.set_defaults(func=cmd_link)

    p = sub.add_parser("sources", help="list sources and their status")
    p.add_argument("--skill")
    p.set_defaults(func=cmd_sources)

    p = sub.add_parser("feedback", help="generate feedback for a student response")
    p.add_argument("--skill", required=True)
    p.add_argument("--question", required=True)
    p.add_argument("--response", required=True, help="response text, or - for stdin")
    p.add_argument("--context")
    p.add_argument("--json", action="store_true", help="print the result as JSON")
    p.set_defaults(func=cmd_feedback)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    try:
        return args.func(args, settings)
    except FeedbackEngineError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        if e.detail:
            print(e.detail, file=sys.stderr)
        return 1
    except (DimensionMismatch, RuntimeError, OSError) as e:
        # Object storage failures and unreadable input files
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValidationError as e:
        print(f"Invalid input: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
