"""
Build the semantic index for a case.

Embeds every classified document in the case that has no chunks yet
(or all classified documents with --reindex).

Usage:
    python index_documents.py --case-id <uuid> --owner-id <user>
    python index_documents.py --case-id <uuid> --owner-id <user> --reindex
"""

import sys
import json
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logger = logging.getLogger(__name__)


def main():
    arg_parser = argparse.ArgumentParser(description="Index classified case documents")
    arg_parser.add_argument("--case-id", type=str, required=True, help="Case to index")
    arg_parser.add_argument("--owner-id", type=str, required=True, help="Owner recorded on chunks")
    arg_parser.add_argument("--reindex", action="store_true", help="Re-index documents that already have chunks")
    arg_parser.add_argument("--provider", type=str, default=None, help="Embedding provider (openai or voyage)")
    arg_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = arg_parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    from execution.case_intel.classifier import LLMClassifier
    from execution.case_intel.embeddings import get_embedding_service
    from execution.case_intel.extraction import LocalBlobStore
    from execution.case_intel.indexer import ChunkIndexer
    from execution.case_intel.metrics import get_metrics_collector
    from execution.case_intel.pipeline import ClassificationPipeline
    from execution.case_intel.vector_store import VectorStore

    store = VectorStore()
    store.connect()
    store.initialize_schema()

    try:
        embeddings = get_embedding_service(provider=args.provider)
        pipeline = ClassificationPipeline(store, LocalBlobStore(), LLMClassifier())
        indexer = ChunkIndexer(store, embeddings, metrics=get_metrics_collector())

        report = indexer.index_case(
            args.case_id, args.owner_id, pipeline.load_text, reindex=args.reindex
        )
        print(json.dumps(report.to_dict(), indent=2))

        if report.failed:
            logger.error(f"{report.failed} documents failed to index")
            sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
