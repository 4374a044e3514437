"""
Test suite for the HTTP front door.
"""
import pytest

from filebroker.api import create_app


@pytest.fixture
def api(client, make_broker):
    """Create test client plus a broker over the same directory."""
    broker = make_broker(lambda instruction, session_id: f"answer to {instruction}")
    app = create_app(client, max_wait=0.2)
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client, broker


def test_health_endpoint(api):
    test_client, _ = api
    response = test_client.get("/health")
    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "ok"
    assert data["service"] == "filebroker"
    assert data["directory_ok"] is True


def test_instruction_round_trip(api):
    test_client, broker = api
    response = test_client.post("/api/instructions", json={"instruction": "Sum the amounts", "sessionId": "web1"})
    assert response.status_code == 202
    assert response.get_json() == {"status": "queued", "sessionId": "web1"}

    pending = test_client.get("/api/responses/web1")
    assert pending.status_code == 202
    assert pending.get_json()["status"] == "pending"

    broker.process_pending()

    done = test_client.get("/api/responses/web1")
    assert done.status_code == 200
    data = done.get_json()
    assert data["success"] is True
    assert data["response"] == "answer to Sum the amounts"


def test_generated_session_id(api):
    test_client, broker = api
    response = test_client.post("/api/instructions", json={"instruction": "Summarize"})
    assert response.status_code == 202
    sid = response.get_json()["sessionId"]
    assert broker.directory.request_path(sid).exists()


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"instruction": ""},
        {"instruction": "ok", "sessionId": "../x"},
        {"instruction": 42},
    ],
)
def test_rejects_bad_instruction_payloads(api, body):
    test_client, _ = api
    response = test_client.post("/api/instructions", json=body)
    assert response.status_code == 400
    assert response.get_json()["status"] == "error"


def test_rejects_non_json_body(api):
    test_client, _ = api
    response = test_client.post("/api/instructions", data="not json", content_type="text/plain")
    assert response.status_code == 400


def test_malformed_response_is_422(api):
    test_client, broker = api
    broker.directory.response_path("broken").write_text("{", encoding="utf-8")

    response = test_client.get("/api/responses/broken")
    assert response.status_code == 422
    assert response.get_json()["status"] == "malformed"


def test_wait_endpoint_times_out_as_pending(api):
    test_client, _ = api
    response = test_client.get("/api/responses/slow/wait?timeout=0.05")
    assert response.status_code == 202
    assert response.get_json()["status"] == "pending"


def test_wait_endpoint_rejects_bad_timeout(api):
    test_client, _ = api
    response = test_client.get("/api/responses/slow/wait?timeout=soon")
    assert response.status_code == 400
