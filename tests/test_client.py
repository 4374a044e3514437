import json
import threading
import time

import pytest

from filebroker.payload import build_error_response, build_response


@pytest.fixture
def ready(client):
    client.directory.ensure_layout()
    return client


def _write_response(client, session_id, payload):
    client.directory.response_path(session_id).write_text(
        payload if isinstance(payload, str) else json.dumps(payload), encoding="utf-8"
    )


def test_enqueue_writes_request_artifact(ready):
    sid = ready.enqueue("Count Mastercard transactions")

    path = ready.directory.request_path(sid)
    assert path.read_text(encoding="utf-8") == "Count Mastercard transactions"
    assert ready.directory.codec.decode(path.name) == sid


def test_enqueue_creates_missing_root(client):
    sid = client.enqueue("R1", session_id="fresh")
    assert client.directory.request_path(sid).exists()


@pytest.mark.parametrize("session_id", ["a/b", "..", "", "a\\b"])
def test_enqueue_rejects_unsafe_session_ids(ready, session_id):
    with pytest.raises(ValueError):
        ready.enqueue("R1", session_id=session_id)


def test_enqueue_rejects_empty_instruction(ready):
    with pytest.raises(ValueError):
        ready.enqueue("   ")


def test_wait_times_out_without_raising(ready):
    started = time.monotonic()
    result = ready.wait_for_response("never", timeout=0.2, poll_interval=0.05)

    assert result.timed_out
    assert result.payload is None
    assert result.waited >= 0.2
    assert time.monotonic() - started < 2


def test_completed_response_is_read_without_mutation(ready):
    payload = build_response("done", "answer")
    _write_response(ready, "done", payload)
    path = ready.directory.response_path("done")
    before = path.read_text(encoding="utf-8")

    first = ready.wait_for_response("done", timeout=1)
    second = ready.wait_for_response("done", timeout=1)

    assert first.completed and second.completed
    assert first.payload == payload == second.payload
    assert path.read_text(encoding="utf-8") == before


def test_failed_response_carries_error(ready):
    _write_response(ready, "err", build_error_response("err", "responder failed: boom", "ResponderFailure", 3))

    result = ready.wait_for_response("err", timeout=1)

    assert result.failed
    assert result.error == "responder failed: boom"


@pytest.mark.parametrize(
    "body",
    [
        "window.claudeResponse = {};",
        json.dumps({"success": True, "sessionId": "m"}),
        json.dumps({"success": "yes", "sessionId": "m", "timestamp": "2025-01-01T00:00:00+00:00",
                    "response": "x", "status": "completed"}),
        json.dumps({"success": True, "sessionId": "other", "timestamp": "2025-01-01T00:00:00+00:00",
                    "response": "x", "status": "completed"}),
        json.dumps([1, 2, 3]),
    ],
)
def test_malformed_response_is_reported_distinctly(ready, body):
    _write_response(ready, "m", body)

    result = ready.wait_for_response("m", timeout=1)

    assert result.malformed
    assert not result.completed and not result.timed_out
    assert result.problems


def test_concurrent_readers_see_the_same_response(ready):
    results = []

    def reader():
        results.append(ready.wait_for_response("shared", timeout=5, poll_interval=0.02))

    readers = [threading.Thread(target=reader) for _ in range(3)]
    for t in readers:
        t.start()
    time.sleep(0.1)
    ready.directory.write_response("shared", build_response("shared", "answer"))
    for t in readers:
        t.join(5)

    assert len(results) == 3
    assert all(r.completed for r in results)
    assert ready.directory.response_path("shared").exists()


def test_read_response_rejects_invalid_session_id(ready):
    with pytest.raises(ValueError):
        ready.read_response("../escape")


def test_undecodable_response_is_malformed_not_an_exception(ready):
    ready.directory.response_path("bad").write_bytes(b"\xff\xfe{not utf8")

    result = ready.wait_for_response("bad", timeout=0.1, poll_interval=0.02)

    assert result.malformed
    assert "UTF-8" in result.error


def test_unreadable_response_keeps_polling_until_deadline(ready):
    ready.directory.response_path("blocked").mkdir()

    assert ready.read_response("blocked") is None
    result = ready.wait_for_response("blocked", timeout=0.1, poll_interval=0.02)

    assert result.timed_out
    assert result.waited >= 0.1
