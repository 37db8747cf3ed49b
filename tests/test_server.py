"""HTTP API tests with an in-memory UUT session."""

from unittest.mock import MagicMock

import pytest
from starlette.testclient import TestClient

from dispatch import Dispatcher
from errors import TransportError
from protocol import TEST_FAILED, TEST_SPI, TEST_SUCCESS, peripherals_in
from result_store import TestRecord
from tests.helpers import FakeSession, make_ack


def responder(request):
    return [
        make_ack(request.test_id, p, TEST_FAILED if p == TEST_SPI else TEST_SUCCESS)
        for p in peripherals_in(request.peripheral_mask)
    ]


@pytest.fixture
def test_app(store):
    """Server module wired to a temp store and fake UUT; lifespan is not run."""
    import server

    orig_store, orig_dispatcher = server.store, server.dispatcher
    server.store = store
    server.dispatcher = Dispatcher(store, session_factory=lambda: FakeSession(responder), ack_timeout=1.0)
    yield TestClient(server.app), server
    server.store, server.dispatcher = orig_store, orig_dispatcher


class TestRunEndpoint:
    def test_run_uart(self, test_app):
        client, _ = test_app
        resp = client.post("/api/tests", json={"peripherals": ["uart"], "message": "Hello UART"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["test_id"] == 1
        assert data["all_success"] is True
        assert data["result"] == "Success"

    def test_run_with_failure(self, test_app):
        client, _ = test_app
        resp = client.post("/api/tests", json={"peripherals": ["UART", "spi"], "iterations": 3})
        assert resp.status_code == 200
        assert resp.json()["all_success"] is False

    @pytest.mark.parametrize("body", [
        {"peripherals": []},
        {"peripherals": ["can"]},
        {"peripherals": ["uart"], "iterations": 256},
        {"peripherals": ["uart"], "message": "x" * 256},
        {},
    ])
    def test_invalid_body(self, test_app, body):
        client, _ = test_app
        assert client.post("/api/tests", json=body).status_code == 422

    def test_busy(self, test_app):
        client, server = test_app
        server.dispatcher = MagicMock(busy=True)
        assert client.post("/api/tests", json={"peripherals": ["uart"]}).status_code == 409

    def test_transport_error(self, test_app):
        client, server = test_app
        server.dispatcher = MagicMock(busy=False)
        server.dispatcher.run.side_effect = TransportError("no route to host")
        resp = client.post("/api/tests", json={"peripherals": ["i2c"]})
        assert resp.status_code == 502
        assert "no route to host" in resp.json()["error"]

    def test_status(self, test_app):
        client, _ = test_app
        client.post("/api/tests", json={"peripherals": ["uart"]})
        data = client.get("/api/status").json()
        assert data == {"state": "logged", "busy": False, "test_id": 1}

    def test_cancel_when_idle(self, test_app):
        client, _ = test_app
        assert client.post("/api/tests/cancel").json() == {"cancelled": False}


class TestReadEndpoints:
    def test_get_record(self, test_app, store):
        client, _ = test_app
        store.insert_record(TestRecord(5, "2025-03-01 10:00:00", 0.5, True))
        resp = client.get("/api/tests/5")
        assert resp.status_code == 200
        assert resp.json()["timestamp"] == "2025-03-01 10:00:00"

    def test_get_missing(self, test_app):
        client, _ = test_app
        assert client.get("/api/tests/42").status_code == 404

    def test_list_ascending(self, test_app, store):
        client, _ = test_app
        for tid in (3, 1, 2):
            store.insert_record(TestRecord(tid, "2025-03-01 10:00:00", 0.5, tid != 2))
        data = client.get("/api/tests").json()
        assert [r["test_id"] for r in data] == [1, 2, 3]
        assert [r["all_success"] for r in data] == [True, False, True]

    def test_csv(self, test_app, store):
        client, _ = test_app
        store.insert_record(TestRecord(1, "2025-03-01 10:00:00", 0.5, True))
        resp = client.get("/api/tests.csv")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert resp.text == "test_id,timestamp,duration,result\n1,2025-03-01 10:00:00,0.5,1\n"
