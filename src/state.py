"""Checkpoint store: one end_block per (blockchain, network).

The table is small, so every update reads the whole table, merges the new
row in and rewrites it. Each backend returns a version stamp on read and
rejects a write whose expected stamp no longer matches, which turns the
read-modify-write race between concurrent runs into a retry instead of a
lost update.
"""
import fcntl
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, asdict, replace
import requests
from google.api_core import exceptions as gcs_exceptions
from config import CHECKPOINT_COLS, CHECKPOINT_MAX_ATTEMPTS, CHECKPOINT_TABLE_SCHEMA
from errors import CheckpointConflict, CheckpointError
from process import to_csv
from utils import content_hash

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    blockchain: str
    network: str
    end_block: int

    @classmethod
    def from_row(cls, row):
        try:
            return cls(str(row["blockchain"]), str(row["network"]), int(row["end_block"]))
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointError(f"Malformed checkpoint row {row!r}: {e}") from e

    def key(self):
        return self.blockchain, self.network


def merge_checkpoint(checkpoints, update):
    """Replaces the row for update's pair, or appends it. Returns a new list."""
    merged = []
    found = False
    for cp in checkpoints:
        if cp.key() == update.key():
            if not found:
                merged.append(replace(cp, end_block=update.end_block))
                found = True
            # duplicates of the pair are collapsed
            continue
        merged.append(cp)
    if not found:
        merged.append(update)
    return merged


def _rows(checkpoints):
    return [asdict(cp) for cp in checkpoints]


# ---------------- BACKENDS ----------------
class LocalCheckpointBackend:
    """JSON file on disk. Version = digest of the stored rows."""

    def __init__(self, path):
        self.path = path

    def _load(self):
        if not os.path.exists(self.path):
            return []
        with open(self.path) as f:
            return json.load(f).get("checkpoints", [])

    def read(self):
        try:
            rows = self._load()
        except (OSError, ValueError) as e:
            raise CheckpointError(f"Could not read {self.path}: {e}") from e
        return [Checkpoint.from_row(r) for r in rows], content_hash(rows)

    @contextmanager
    def _locked(self):
        """Exclusive lock on a sidecar file, held across check, write and replace."""
        with open(f"{self.path}.lock", "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def write(self, checkpoints, expected_version=None):
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with self._locked():
                if expected_version is not None:
                    _, current = self.read()
                    if current != expected_version:
                        raise CheckpointConflict(f"{self.path} changed since it was read")
                tmp_path = f"{self.path}.tmp"
                with open(tmp_path, "w") as f:
                    json.dump({"checkpoints": _rows(checkpoints)}, f, indent=2)
                os.replace(tmp_path, self.path)
        except OSError as e:
            raise CheckpointError(f"Could not write {self.path}: {e}") from e


class GcsCheckpointBackend:
    """JSON object in a bucket. Version = object generation (0 when missing)."""

    def __init__(self, bucket, blob_path):
        self.bucket = bucket
        self.blob_path = blob_path

    def read(self):
        try:
            blob = self.bucket.get_blob(self.blob_path)
            if blob is None:
                return [], 0
            rows = json.loads(blob.download_as_text()).get("checkpoints", [])
        except (gcs_exceptions.GoogleAPICallError, ValueError) as e:
            raise CheckpointError(f"Could not read gs://{self.bucket.name}/{self.blob_path}: {e}") from e
        return [Checkpoint.from_row(r) for r in rows], blob.generation

    def write(self, checkpoints, expected_version=None):
        blob = self.bucket.blob(self.blob_path)
        body = json.dumps({"checkpoints": _rows(checkpoints)}, indent=2)
        try:
            blob.upload_from_string(body, content_type="application/json", if_generation_match=expected_version)
        except gcs_exceptions.PreconditionFailed as e:
            raise CheckpointConflict(f"gs://{self.bucket.name}/{self.blob_path} changed since it was read") from e
        except gcs_exceptions.GoogleAPICallError as e:
            raise CheckpointError(f"Could not write gs://{self.bucket.name}/{self.blob_path}: {e}") from e


class DuneCheckpointBackend:
    """Dune table read through a saved query, rewritten with upload/csv.

    Version = digest of the query rows. Dune has no conditional write and
    query results only move after a refresh, so the guard narrows the race
    between concurrent runs but does not close it.
    """

    def __init__(self, client, namespace, table_name, query_id):
        self.client = client
        self.namespace = namespace
        self.table_name = table_name
        self.query_id = query_id

    def _fetch_rows(self):
        rows = self.client.get_result_rows(self.query_id)
        return [{k: r.get(k) for k in CHECKPOINT_COLS} for r in rows]

    def read(self):
        try:
            rows = self._fetch_rows()
        except requests.RequestException as e:
            raise CheckpointError(f"Could not fetch end blocks from query {self.query_id}: {e}") from e
        checkpoints = [Checkpoint.from_row(r) for r in rows]
        return checkpoints, content_hash(_rows(checkpoints))

    def write(self, checkpoints, expected_version=None):
        if expected_version is not None:
            _, current = self.read()
            if current != expected_version:
                raise CheckpointConflict(f"Dune table {self.table_name} changed since it was read")
        try:
            csv_data = to_csv(_rows(checkpoints), columns=CHECKPOINT_COLS)
            self.client.upload_csv(self.table_name, csv_data, description="PKP indexer end blocks")
            self.client.execute_query(self.query_id)
        except requests.RequestException as e:
            raise CheckpointError(f"Error updating Dune table {self.table_name}: {e}") from e

    def create_table(self):
        try:
            return self.client.create_table(
                self.namespace,
                self.table_name,
                CHECKPOINT_TABLE_SCHEMA,
                description="table for storing end blocks",
            )
        except requests.RequestException as e:
            raise CheckpointError(f"Could not create Dune table {self.table_name}: {e}") from e


# ---------------- STORE ----------------
class CheckpointStore:
    def __init__(self, backend, max_attempts=CHECKPOINT_MAX_ATTEMPTS, guarded=True):
        self.backend = backend
        self.max_attempts = max_attempts
        self.guarded = guarded

    def fetch_all(self):
        checkpoints, _ = self.backend.read()
        return checkpoints

    def get(self, blockchain, network):
        for cp in self.fetch_all():
            if cp.key() == (blockchain, network):
                return cp
        return None

    def upsert(self, blockchain, network, end_block):
        """Sets end_block for the pair and rewrites the table. Returns the written rows."""
        update = Checkpoint(blockchain, network, int(end_block))
        for attempt in range(1, self.max_attempts + 1):
            checkpoints, version = self.backend.read()
            merged = merge_checkpoint(checkpoints, update)
            try:
                self.backend.write(merged, expected_version=version if self.guarded else None)
            except CheckpointConflict as e:
                logger.warning(f"Checkpoint conflict for {blockchain}/{network} (attempt {attempt}/{self.max_attempts}): {e}")
                continue
            logger.info(f"End block for {blockchain}/{network} set to {end_block}")
            return merged
        raise CheckpointError(
            f"Could not update end block for {blockchain}/{network} after {self.max_attempts} attempts"
        )
