import json
import pytest
import requests
from conftest import FakeBucket, FakeResponse, FakeSession
from dune import DuneClient
from errors import SinkError
from sinks import CsvFileSink, DuneSink, GcsCsvSink

ROWS = [
    {"blockchain": "yellowstone", "network": "datil_prod", "token_id": "7", "eth_address": "0xABC"},
    {"blockchain": "yellowstone", "network": "datil_prod", "token_id": "8", "eth_address": "0xDEF"},
]


def test_csv_file_sink_writes_header_once(tmp_path):
    path = tmp_path / "out" / "results.csv"
    sink = CsvFileSink(str(path))

    assert sink.append(ROWS[:1]) == 1
    assert sink.append(ROWS[1:]) == 1

    assert path.read_text().splitlines() == [
        "Blockchain,Network,Token ID,ETH Address",
        "yellowstone,datil_prod,7,0xABC",
        "yellowstone,datil_prod,8,0xDEF",
    ]


def test_csv_file_sink_skips_empty_batch(tmp_path):
    path = tmp_path / "results.csv"

    assert CsvFileSink(str(path)).append([]) == 0
    assert not path.exists()


def test_gcs_sink_writes_partitioned_object():
    bucket = FakeBucket()
    sink = GcsCsvSink(bucket, "pkp_mints/", "yellowstone", "datil_prod", clock=lambda: 1700000000.5)

    sink.append(ROWS)

    name = "pkp_mints/blockchain=yellowstone/network=datil_prod/pkp_1700000000.csv"
    assert bucket.objects[name][0].splitlines()[0] == "blockchain,network,token_id,eth_address"
    assert len(bucket.objects[name][0].splitlines()) == 3
    assert bucket.content_types[name] == "text/csv"


def _dune_sink(session, query_id="99"):
    client = DuneClient("key", base_url="https://dune.test/api", session=session)
    return DuneSink(client, "lit", "pkps", query_id)


def test_dune_sink_inserts_ndjson_and_refreshes():
    session = FakeSession({
        ("POST", "/v1/table/lit/pkps/insert"): FakeResponse(payload={"rows_written": 2}),
        ("POST", "/v1/query/99/execute"): FakeResponse(payload={"execution_id": "e1"}),
    })

    assert _dune_sink(session).append(ROWS) == 2

    insert = session.calls[0]
    assert insert["headers"]["Content-Type"] == "application/x-ndjson"
    lines = insert["data"].decode("utf-8").strip().split("\n")
    assert [json.loads(line) for line in lines] == ROWS
    assert session.calls[1]["url"] == "https://dune.test/api/v1/query/99/execute"


def test_dune_sink_without_query_id_skips_refresh():
    session = FakeSession({("POST", "/v1/table/lit/pkps/insert"): FakeResponse(payload={})})

    _dune_sink(session, query_id=None).append(ROWS)

    assert len(session.calls) == 1


def test_dune_sink_error_is_fatal():
    session = FakeSession({("POST", "/v1/table/lit/pkps/insert"): FakeResponse(500)})

    with pytest.raises(SinkError):
        _dune_sink(session).append(ROWS)


def test_dune_sink_empty_batch_makes_no_request():
    session = FakeSession()

    assert _dune_sink(session).append([]) == 0
    assert session.calls == []


def test_ensure_table_tolerates_existing_table():
    session = FakeSession({("POST", "/v1/table/create"): FakeResponse(409)})

    assert _dune_sink(session).ensure_table() is True


def test_ensure_table_other_errors_are_fatal():
    session = FakeSession({("POST", "/v1/table/create"): requests.ConnectionError("down")})

    with pytest.raises(SinkError):
        _dune_sink(session).ensure_table()
