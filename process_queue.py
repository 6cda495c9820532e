"""
Run the document classification worker.

One invocation performs a single batch (up to 5 documents or 55 seconds),
which is what a cron trigger should call. With --loop it keeps running
batches, sleeping between them when the queue is empty.

Usage:
    python process_queue.py                     # One batch
    python process_queue.py --loop --interval 60
    python process_queue.py --cleanup           # Force retention cleanup
    python process_queue.py --stats             # Print queue stats and exit
"""

import sys
import json
import time
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logger = logging.getLogger(__name__)


def build_queue():
    from execution.case_intel.classifier import LLMClassifier
    from execution.case_intel.extraction import LocalBlobStore
    from execution.case_intel.metrics import get_metrics_collector
    from execution.case_intel.pipeline import ClassificationPipeline
    from execution.case_intel.processing_queue import ProcessingQueue, QueueConfig
    from execution.case_intel.queue_store import PostgresQueueStore
    from execution.case_intel.vector_store import VectorStore

    store = VectorStore()
    store.connect()
    store.initialize_schema()

    queue_store = PostgresQueueStore(store)
    queue_store.initialize_schema()

    pipeline = ClassificationPipeline(store, LocalBlobStore(), LLMClassifier())
    queue = ProcessingQueue(
        queue_store,
        classify=pipeline.classify_and_store,
        config=QueueConfig.from_env(),
        metrics=get_metrics_collector(),
    )
    return store, queue


def main():
    arg_parser = argparse.ArgumentParser(description="Process the document classification queue")
    arg_parser.add_argument("--loop", action="store_true", help="Keep running batches")
    arg_parser.add_argument(
        "--interval",
        type=float,
        default=60.0,
        help="Seconds to sleep between batches when the queue is empty (default: 60)",
    )
    arg_parser.add_argument("--max-documents", type=int, default=None, help="Override the per-batch cap")
    arg_parser.add_argument("--cleanup", action="store_true", help="Force retention cleanup this run")
    arg_parser.add_argument("--stats", action="store_true", help="Print queue stats and exit")
    arg_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = arg_parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    from execution.case_intel.worker import WorkerConfig, run_batch

    store, queue = build_queue()

    if args.stats:
        print(json.dumps(queue.stats().to_dict(), indent=2))
        store.close()
        return

    config = WorkerConfig.from_env()
    if args.max_documents:
        config.max_documents = args.max_documents

    try:
        while True:
            report = run_batch(queue, config, force_cleanup=args.cleanup)
            if not args.loop:
                print(json.dumps(report.to_dict(), indent=2))
                break
            if report.stopped_reason == "queue_empty":
                time.sleep(args.interval)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        store.close()


if __name__ == "__main__":
    main()
