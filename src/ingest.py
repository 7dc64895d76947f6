import argparse
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv
from chain import ChainReader
from config import build_registry, load_settings, validate_settings
from dune import DuneClient
from errors import IndexerError
from fetch import EventFetcher
from process import events_to_rows, format_events
from sinks import CsvFileSink, DuneSink, GcsCsvSink
from state import CheckpointStore, DuneCheckpointBackend, GcsCheckpointBackend, LocalCheckpointBackend
from utils import get_bucket

logger = logging.getLogger(__name__)

# Run stages, in order. FAILED is entered from any of them.
READ_CHECKPOINT = "ReadCheckpoint"
COMPUTE_RANGE = "ComputeRange"
FETCH = "Fetch"
FORMAT = "Format"
WRITE_SINK = "WriteSink"
WRITE_CHECKPOINT = "WriteCheckpoint"
DONE = "Done"
FAILED = "Failed"


@dataclass
class RunSummary:
    blockchain: str
    network: str
    start_block: Optional[int] = None
    end_block: Optional[int] = None
    rows_written: int = 0
    failed_windows: List[tuple] = field(default_factory=list)
    skipped_tokens: List[str] = field(default_factory=list)
    checkpoint: Optional[int] = None
    stage: str = READ_CHECKPOINT


def compute_range(settings, checkpoint, head_block=None):
    """(start_block, end_block) for this run. start > end means nothing to do."""
    if settings.start_block is not None:
        start_block = settings.start_block
    elif checkpoint is not None:
        # end_block is the last processed block
        start_block = checkpoint.end_block + 1
    else:
        start_block = 0

    if settings.end_block is not None:
        end_block = settings.end_block
    else:
        end_block = start_block + settings.batch_size

    if head_block is not None and end_block > head_block:
        logger.info(f"End block {end_block} is past chain head {head_block}; clipping.")
        end_block = head_block
    return start_block, end_block


def run_ingestion(settings, reader, store, sink, sleep=time.sleep):
    """ReadCheckpoint -> ComputeRange -> Fetch -> Format -> WriteSink -> WriteCheckpoint.

    Fetch errors are absorbed per window / per event. Anything raised from
    the other stages propagates after the summary is marked FAILED.
    """
    blockchain, network = settings.blockchain, settings.network
    summary = RunSummary(blockchain, network)

    try:
        summary.stage = READ_CHECKPOINT
        checkpoint = store.get(blockchain, network)
        logger.info(f"Checkpoint for {blockchain}/{network}: {checkpoint.end_block if checkpoint else 'none'}")

        summary.stage = COMPUTE_RANGE
        head_block = reader.head_block()
        start_block, end_block = compute_range(settings, checkpoint, head_block)
        summary.start_block, summary.end_block = start_block, end_block
        logger.info(f"Start Block: {start_block}")
        logger.info(f"End Block: {end_block}")

        if start_block > end_block:
            logger.info(f"{blockchain}/{network} is up to date at block {head_block}.")
            summary.stage = DONE
            return summary

        summary.stage = FETCH
        fetcher = EventFetcher(
            reader,
            settings.block_interval,
            window_delay=settings.window_delay,
            max_attempts=settings.rpc_max_attempts,
            backoff=settings.rpc_backoff,
            sleep=sleep,
        )
        report = fetcher.fetch(start_block, end_block)
        summary.failed_windows = [(w.from_block, w.to_block) for w in report.failed_windows]
        summary.skipped_tokens = [token_id for token_id, _ in report.skipped]

        summary.stage = FORMAT
        rows = format_events(events_to_rows(report.events))
        logger.info(f"PKPs: {len(rows)} rows ready for {blockchain}/{network}")

        summary.stage = WRITE_SINK
        summary.rows_written = sink.append(rows)

        summary.stage = WRITE_CHECKPOINT
        new_end_block = end_block
        if settings.hold_checkpoint_on_failure and report.failed_windows:
            new_end_block = report.last_contiguous_block
            logger.warning(f"Holding checkpoint at {new_end_block} so failed windows are retried next run.")
        if checkpoint is not None and new_end_block < checkpoint.end_block and settings.start_block is None:
            logger.warning(f"Not moving checkpoint backwards ({checkpoint.end_block} -> {new_end_block}).")
        elif new_end_block >= 0:
            store.upsert(blockchain, network, new_end_block)
            summary.checkpoint = new_end_block

        summary.stage = DONE
        return summary
    except IndexerError as e:
        logger.error(f"Run failed during {summary.stage} for {blockchain}/{network}: {e}")
        summary.stage = FAILED
        raise


# ---------------- WIRING ----------------
def build_dune_client(settings):
    return DuneClient(settings.dune_api_key, base_url=settings.dune_api_url, timeout=settings.http_timeout)


def build_checkpoint_store(settings, dune_client=None, bucket=None):
    if settings.checkpoint_backend == "dune":
        backend = DuneCheckpointBackend(
            dune_client or build_dune_client(settings),
            settings.dune_namespace,
            settings.dune_table_name_end_block,
            settings.dune_query_id_end_block,
        )
    elif settings.checkpoint_backend == "gcs":
        backend = GcsCheckpointBackend(bucket or get_bucket(settings.bucket_name), settings.checkpoint_path)
    else:
        backend = LocalCheckpointBackend(settings.checkpoint_path)
    return CheckpointStore(backend, max_attempts=settings.checkpoint_max_attempts)


def build_sink(settings, dune_client=None, bucket=None):
    if settings.sink == "dune":
        return DuneSink(
            dune_client or build_dune_client(settings),
            settings.dune_namespace,
            settings.dune_table_name,
            settings.dune_query_id,
        )
    if settings.sink == "gcs":
        return GcsCsvSink(
            bucket or get_bucket(settings.bucket_name), settings.gcs_prefix, settings.blockchain, settings.network
        )
    return CsvFileSink(settings.csv_path)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Index PKPMinted events and their ETH addresses.")
    parser.add_argument("--blockchain", help="Overrides BLOCKCHAIN")
    parser.add_argument("--network", help="Overrides NETWORK")
    parser.add_argument("--start-block", type=int, help="Overrides START_BLOCK")
    parser.add_argument("--end-block", type=int, help="Overrides END_BLOCK")
    parser.add_argument("--show-checkpoints", action="store_true", help="Print the checkpoint table and exit")
    parser.add_argument("--create-tables", action="store_true", help="Create missing Dune tables and exit")
    return parser.parse_args(argv)


def load_run_settings(args, env=None):
    env = dict(os.environ if env is None else env)
    if args.blockchain:
        env["BLOCKCHAIN"] = args.blockchain
    if args.network:
        env["NETWORK"] = args.network
    settings = load_settings(env)
    overrides = {}
    if args.start_block is not None:
        overrides["start_block"] = args.start_block
    if args.end_block is not None:
        overrides["end_block"] = args.end_block
    if overrides:
        settings = validate_settings(settings.replace(**overrides))
    return settings


def create_tables(settings, dune_client=None):
    dune_client = dune_client or build_dune_client(settings)
    if settings.sink == "dune":
        build_sink(settings, dune_client=dune_client).ensure_table()
    if settings.checkpoint_backend == "dune":
        build_checkpoint_store(settings, dune_client=dune_client).backend.create_table()


def main(argv=None):
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    load_dotenv()
    args = parse_args(argv)

    print("--- PIPELINE STARTING ---")
    try:
        settings = load_run_settings(args)
        logger.info(f"Settings: {settings}")

        dune_client = None
        if "dune" in (settings.sink, settings.checkpoint_backend):
            dune_client = build_dune_client(settings)

        if args.create_tables:
            create_tables(settings, dune_client)
            return 0

        store = build_checkpoint_store(settings, dune_client=dune_client)
        if args.show_checkpoints:
            for cp in store.fetch_all():
                print(f"{cp.blockchain},{cp.network},{cp.end_block}")
            return 0

        reader = ChainReader(
            build_registry(), settings.blockchain, settings.network, timeout=settings.http_timeout
        )
        reader.verify_chain()
        sink = build_sink(settings, dune_client=dune_client)
        summary = run_ingestion(settings, reader, store, sink)
    except IndexerError as e:
        logger.error(f"Fatal error: {e}")
        print(f"Unhandled error: {e}", file=sys.stderr)
        return 1

    logger.info(
        f"{summary.blockchain}/{summary.network}: blocks {summary.start_block}-{summary.end_block}, "
        f"{summary.rows_written} rows written, {len(summary.failed_windows)} failed windows, "
        f"checkpoint {summary.checkpoint}"
    )
    print("--- PIPELINE FINISHED ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())
