import json
import pytest
import requests
from google.api_core import exceptions as gcs_exceptions
from config import NetworkDef, ChainDef, load_settings
from errors import RpcError


class FakeReader:
    """Stands in for ChainReader. logs maps block number -> list of token ids."""

    def __init__(self, logs=None, addresses=None, head=10_000_000, failing_windows=(), failing_tokens=()):
        self.chain = ChainDef("yellowstone", "http://rpc.invalid", 175188)
        self.network = NetworkDef("datil_prod", "0x487A9D096BB4B7Ac1520Cb12370e31e677B175EA")
        self.logs = logs or {}
        self.addresses = addresses or {}
        self.head = head
        self.failing_windows = set(failing_windows)
        self.failing_tokens = set(failing_tokens)
        self.queried = []
        self.address_calls = []

    def head_block(self):
        return self.head

    def query_logs(self, from_block, to_block):
        self.queried.append((from_block, to_block))
        if (from_block, to_block) in self.failing_windows:
            raise RpcError(f"Error fetching events from block {from_block} to {to_block}")
        return [
            {"blockNumber": block, "topics": ["0xtopic", hex(int(token_id))]}
            for block in sorted(self.logs)
            if from_block <= block <= to_block
            for token_id in self.logs[block]
        ]

    @staticmethod
    def decode_token_id(log):
        return str(int(log["topics"][1], 16))

    def get_eth_address(self, token_id):
        self.address_calls.append(token_id)
        if token_id in self.failing_tokens:
            raise RpcError(f"Error fetching ETH address for Token ID {token_id}")
        return self.addresses.get(token_id, f"0x{int(token_id):040x}")


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """Records requests; replies from a {(method, endpoint suffix): response} table."""

    def __init__(self, routes=None):
        self.headers = {}
        self.routes = routes or {}
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        for (route_method, suffix), response in self.routes.items():
            if route_method == method and url.endswith(suffix):
                if isinstance(response, Exception):
                    raise response
                return response
        return FakeResponse(404)


class FakeBlob:
    def __init__(self, bucket, name):
        self.bucket = bucket
        self.name = name

    @property
    def generation(self):
        return self.bucket.objects[self.name][1]

    def download_as_text(self):
        return self.bucket.objects[self.name][0]

    def upload_from_string(self, data, content_type=None, if_generation_match=None):
        current = self.bucket.objects.get(self.name, (None, 0))[1]
        if if_generation_match is not None and if_generation_match != current:
            raise gcs_exceptions.PreconditionFailed("generation mismatch")
        self.bucket.objects[self.name] = (data, current + 1)
        self.bucket.content_types[self.name] = content_type


class FakeBucket:
    def __init__(self, name="test-bucket"):
        self.name = name
        self.objects = {}
        self.content_types = {}

    def blob(self, name):
        return FakeBlob(self, name)

    def get_blob(self, name):
        return FakeBlob(self, name) if name in self.objects else None

    def read_json(self, name):
        return json.loads(self.objects[name][0])


@pytest.fixture
def env(tmp_path):
    return {
        "BLOCKCHAIN": "yellowstone",
        "NETWORK": "datil_prod",
        "WINDOW_DELAY_SECONDS": "0",
        "RPC_BACKOFF_SECONDS": "0",
        "CSV_PATH": str(tmp_path / "results.csv"),
        "CHECKPOINT_PATH": str(tmp_path / "state" / "checkpoints.json"),
    }


@pytest.fixture
def settings(env):
    return load_settings(env)


@pytest.fixture
def sleeps():
    """Pass sleep=sleeps.append to record delays instead of waiting."""
    return []
