import hashlib
import json
import logging
import time
from google.cloud import storage

logger = logging.getLogger(__name__)


# --- GCS HELPERS ---
def get_gcs_client():
    return storage.Client()


def get_bucket(bucket_name, client=None):
    client = client or get_gcs_client()
    return client.bucket(bucket_name)


# --- RETRY HELPERS ---
def with_retries(fn, attempts=2, backoff=1.0, label="call", retry_on=(Exception,), sleep=time.sleep):
    """Calls fn() up to `attempts` times, doubling the wait after each failure.

    The last exception is re-raised once attempts are exhausted.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == attempts:
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(f"{label} failed (attempt {attempt}/{attempts}): {e}. Retrying in {delay}s...")
            sleep(delay)


# --- DECODER HELPERS ---
def hex_to_int(value):
    """Topic / quantity to int. Accepts 0x-strings, bytes (HexBytes) and ints."""
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    if isinstance(value, str):
        return int(value, 16)
    raise TypeError(f"Cannot convert {type(value).__name__} to int")


def content_hash(rows):
    """Stable digest of a list of dicts, independent of key order."""
    payload = json.dumps(rows, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
