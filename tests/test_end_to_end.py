"""
End-to-end tests against a local front end that blocks /admin for ordinary
requests but forwards h2c upgrades to its backend.

Run: python -m pytest tests/test_end_to_end.py -v
"""

import csv
import json

import httpx

from conftest import base_url
from h2csmuggler.cli import program_main
from h2csmuggler.config import ConnectionConfig, ScanConfig
from h2csmuggler.connection import Request
from h2csmuggler.differ import PassKind, ResponseDiffer
from h2csmuggler.direct import DirectClient
from h2csmuggler.scanner import Scanner


def test_smuggled_request_bypasses_front_end(h2c_server):
    base = base_url(h2c_server)
    scanner = Scanner(ScanConfig(connection=ConnectionConfig(timeout=5)))
    records = scanner.get_paths_on_host(base, [base + "admin"])
    assert len(records) == 1
    assert records[0].status == 200
    assert records[0].body == b"admin panel: secret"
    assert records[0].source == "h2c"


def test_direct_request_is_blocked(h2c_server):
    base = base_url(h2c_server)
    client = DirectClient()
    try:
        record = client.do(Request.build(base + "admin"))
    finally:
        client.close()
    assert record.status == 403
    assert record.body == b"forbidden"
    assert record.source == "normal"


def test_differ_flags_the_bypass(h2c_server):
    base = base_url(h2c_server)
    target = base + "admin"
    client = DirectClient()
    scanner = Scanner(direct=client)
    differ = ResponseDiffer()
    try:
        scanner.get_direct([target], on_result=lambda r: differ.record(PassKind.NORMAL, r))
        scanner.get_paths_on_host(base, [target], on_result=lambda r: differ.record(PassKind.H2C, r))
    finally:
        client.close()

    assert len(differ.mismatches) == 1
    m = differ.mismatches[0]
    assert m.target == target
    assert m.fields["normal-status-code"] == 403
    assert m.fields["h2c-status-code"] == 200


def test_scan_diff_writes_reports(h2c_server, tmp_path):
    base = base_url(h2c_server)
    out_json = tmp_path / "diff.json"
    out_csv = tmp_path / "diff.csv"
    code = program_main(["scan", base, base + "admin", "--diff",
                         "--out-json", str(out_json), "--out-csv", str(out_csv)])
    assert code == 0

    payload = json.loads(out_json.read_text())
    assert [m["target"] for m in payload] == [base + "admin"]
    assert payload[0]["fields"]["normal-status-code"] == 403
    assert payload[0]["fields"]["h2c-status-code"] == 200

    with open(out_csv, newline="") as f:
        rows = list(csv.DictReader(f))
    assert rows[0]["target"] == base + "admin"
    assert rows[0]["normal-status-code"] == "403"
    assert rows[0]["h2c-status-code"] == "200"


def test_hosts_pass(h2c_server):
    base = base_url(h2c_server)
    records = Scanner(ScanConfig(max_parallel_hosts=2)).get_parallel_hosts([base, base + "admin"])
    assert sorted(r.status for r in records) == [200, 200]
    # one upgrade per target
    assert sum(1 for kind, _, _ in h2c_server.seen if kind == "http/1.1") == 2


def test_direct_request_keeps_repeated_headers(http1_server):
    req = Request.build(base_url(http1_server))
    req.headers = httpx.Headers([("X-Forwarded-For", "127.0.0.1"), ("X-Forwarded-For", "10.0.0.1"),
                                 ("Connection", "close")])
    client = DirectClient()
    try:
        assert client._headers(req) == [("x-forwarded-for", "127.0.0.1, 10.0.0.1"),
                                        ("Accept-Encoding", "identity")]
        record = client.do(req)
    finally:
        client.close()
    assert record.status == 200
    _, _, headers = http1_server.seen[0]
    assert headers["x-forwarded-for"] == "127.0.0.1, 10.0.0.1"
