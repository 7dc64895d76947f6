import logging
import os
import time
import requests
from google.api_core import exceptions as gcs_exceptions
from config import CSV_FILE_HEADER, EVENT_COLS, EVENT_TABLE_SCHEMA
from errors import SinkError
from process import to_csv, to_ndjson

logger = logging.getLogger(__name__)


class CsvFileSink:
    """Local CSV. The header is written once; later runs append rows."""

    def __init__(self, path):
        self.path = path

    def append(self, rows):
        if not rows:
            logger.info("No rows to write.")
            return 0
        csv_text = to_csv(rows, columns=EVENT_COLS, header=CSV_FILE_HEADER)
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            is_new = not os.path.exists(self.path) or os.path.getsize(self.path) == 0
            if not is_new:
                csv_text = csv_text.split("\n", 1)[1]
            with open(self.path, "a", newline="") as f:
                f.write(csv_text)
        except OSError as e:
            raise SinkError(f"Could not write {self.path}: {e}") from e
        logger.info(f"Saved {len(rows)} rows to {self.path}")
        return len(rows)


class GcsCsvSink:
    """One CSV object per run, partitioned by blockchain and network."""

    def __init__(self, bucket, prefix, blockchain, network, clock=time.time):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.blockchain = blockchain
        self.network = network
        self.clock = clock

    def blob_path(self, run_ts):
        return f"{self.prefix}/blockchain={self.blockchain}/network={self.network}/pkp_{run_ts}.csv"

    def append(self, rows):
        if not rows:
            logger.info("No rows to write.")
            return 0
        blob_path = self.blob_path(int(self.clock()))
        try:
            blob = self.bucket.blob(blob_path)
            blob.upload_from_string(to_csv(rows, columns=EVENT_COLS), content_type="text/csv")
        except gcs_exceptions.GoogleAPICallError as e:
            raise SinkError(f"Could not upload gs://{self.bucket.name}/{blob_path}: {e}") from e
        logger.info(f"Saved {len(rows)} rows to gs://{self.bucket.name}/{blob_path}")
        return len(rows)


class DuneSink:
    """Additive NDJSON insert into a Dune table, followed by a query refresh."""

    def __init__(self, client, namespace, table_name, query_id=None):
        self.client = client
        self.namespace = namespace
        self.table_name = table_name
        self.query_id = query_id

    def ensure_table(self):
        try:
            return self.client.create_table(
                self.namespace, self.table_name, EVENT_TABLE_SCHEMA, description="PKPMinted events with ETH addresses"
            )
        except requests.RequestException as e:
            raise SinkError(f"Could not create Dune table {self.table_name}: {e}") from e

    def append(self, rows):
        if not rows:
            logger.info("No rows to write.")
            return 0
        try:
            result = self.client.insert_ndjson(self.namespace, self.table_name, to_ndjson(rows, columns=EVENT_COLS))
            logger.info(f"Inserted rows into {self.namespace}.{self.table_name}: {result}")
            if self.query_id:
                self.client.execute_query(self.query_id)
        except requests.RequestException as e:
            raise SinkError(f"Error updating Dune table {self.table_name}: {e}") from e
        return len(rows)
