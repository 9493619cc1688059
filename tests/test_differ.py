"""
Response differ tests: which differences between the normal and the h2c pass
are reported, and how the pairing cache behaves.

Run: python -m pytest tests/test_differ.py -v
"""

import threading

from conftest import make_record
from h2csmuggler.differ import PassKind, ResponseDiffer, compare
from h2csmuggler.errors import DialError, HandshakeError

T = "https://victim.example/admin"
HEADERS = [("Content-Type", "text/html"), ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")]


def normal(**kw):
    kw.setdefault("headers", HEADERS)
    return make_record(target=T, source="normal", **kw)


def h2c(**kw):
    kw.setdefault("headers", HEADERS)
    return make_record(target=T, source="h2c", **kw)


# ============================================================================
# compare()
# ============================================================================

def test_identical_responses_are_silent():
    assert compare(normal(body=b"same"), h2c(body=b"same")) is None


def test_error_on_normal_side_only():
    err = DialError("connection refused", T)
    m = compare(normal(error=err), h2c(status=200, body=b"x" * 50))
    assert m is not None
    assert m.target == T
    assert m.fields["h2c-status-code"] == 200
    assert m.fields["h2c-response-body-len"] == 50
    assert m.fields["normal-error"] == str(err)
    assert "normal-status-code" not in m.fields


def test_error_on_h2c_side_only():
    err = HandshakeError("server did not speak http/2", T)
    m = compare(normal(status=403, body=b"forbidden"), h2c(error=err))
    assert m.fields == {
        "normal-status-code": 403,
        "normal-response-body-len": 9,
        "h2c-error": str(err),
    }


def test_both_sides_failing_is_silent():
    err = DialError("refused", T)
    assert compare(normal(error=err), h2c(error=err)) is None


def test_status_mismatch():
    m = compare(normal(status=403, body=b"abc"), h2c(status=200, body=b"abc"))
    assert m.fields["normal-status-code"] == 403
    assert m.fields["h2c-status-code"] == 200
    assert "normal-response-body-len" not in m.fields


def test_header_reordering_and_values_are_ignored():
    reordered = [("set-cookie", "x=9"), ("SET-COOKIE", "y=8"), ("content-type", "text/plain")]
    assert compare(normal(), h2c(headers=reordered)) is None


def test_header_key_on_one_side_only():
    m = compare(normal(headers=HEADERS + [("X-Frame-Options", "DENY")]), h2c())
    assert m.fields["normal-headers"] == {"x-frame-options": ["DENY"]}
    assert m.fields["h2c-headers"] == {}
    assert m.fields["same-headers"]["set-cookie"] == ["a=1", "b=2"]


def test_header_value_count_divergence():
    m = compare(normal(), h2c(headers=[("Content-Type", "text/html"), ("Set-Cookie", "a=1")]))
    assert m.fields["normal-headers"] == {"set-cookie": ["a=1", "b=2"]}
    assert m.fields["h2c-headers"] == {"set-cookie": ["a=1"]}
    assert "set-cookie" not in m.fields["same-headers"]


def test_body_length_mismatch():
    m = compare(normal(body=b"short"), h2c(body=b"much longer"))
    assert m.fields == {"normal-response-body-len": 5, "h2c-response-body-len": 11}
    assert m.detail == {"normal-body": "short", "h2c-body": "much longer"}


def test_same_length_different_bytes_is_silent():
    assert compare(normal(body=b"nonce=1"), h2c(body=b"nonce=2")) is None


def test_body_detail_attached_when_something_else_differs():
    m = compare(normal(status=403, body=b"nonce=1"), h2c(status=200, body=b"nonce=2"))
    assert set(m.fields) == {"normal-status-code", "h2c-status-code"}
    assert m.detail["normal-body"] == "nonce=1"
    assert m.detail["h2c-body"] == "nonce=2"


# ============================================================================
# ResponseDiffer cache
# ============================================================================

def test_arrival_order_does_not_matter():
    a = ResponseDiffer()
    assert a.record(PassKind.NORMAL, normal(status=403)) is None
    first = a.record(PassKind.H2C, h2c(status=200))

    b = ResponseDiffer()
    assert b.show_diff_h2c(h2c(status=200)) is None
    second = b.show_diff_normal(normal(status=403))

    assert first.fields == second.fields


def test_pending_until_both_sides_arrive():
    d = ResponseDiffer()
    d.record(PassKind.H2C, h2c())
    assert d.pending() == [T]
    d.record(PassKind.NORMAL, normal())
    assert d.pending() == []
    assert d.mismatches == []


def test_resubmission_compares_again():
    d = ResponseDiffer()
    d.record(PassKind.NORMAL, normal(status=403))
    d.record(PassKind.H2C, h2c(status=200))
    again = d.record(PassKind.H2C, h2c(status=200))
    assert again is not None
    assert len(d.mismatches) == 2


def test_delete_on_show_evicts_entry():
    d = ResponseDiffer(delete_on_show=True)
    d.record(PassKind.NORMAL, normal(status=403))
    assert d.record(PassKind.H2C, h2c(status=200)) is not None
    # the entry is gone, so a late record starts a new pair
    assert d.record(PassKind.H2C, h2c(status=200)) is None
    assert d.pending() == [T]
    assert len(d.mismatches) == 1


def test_concurrent_passes():
    d = ResponseDiffer(delete_on_show=True)
    targets = [f"https://victim.example/{i}" for i in range(200)]

    def feed(kind, status):
        for t in targets:
            d.record(kind, make_record(target=t, status=status, source=kind.value))

    threads = [threading.Thread(target=feed, args=(PassKind.NORMAL, 403)),
               threading.Thread(target=feed, args=(PassKind.H2C, 200))]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    assert sorted(m.target for m in d.mismatches) == sorted(targets)
    assert d.pending() == []
