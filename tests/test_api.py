import time

import pytest
from fastapi.testclient import TestClient

from conftest import FakeDescriptions, FakeExtractor, make_image_bytes
from main import create_app


def upload(client, data, content_type="image/png", filename="menu.png"):
    return client.post("/api/menu", files={"image": (filename, data, content_type)})


def wait_for(client, menu_id, statuses=("COMPLETE", "FAILED"), timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/menu/{menu_id}").json()
        if body["status"] in statuses:
            return body
        if time.monotonic() > deadline:
            pytest.fail(f"menu {menu_id} stuck in {body['status']}")
        time.sleep(0.02)


def wait_for_processed(client, menu_id, count, timeout=5.0):
    deadline = time.monotonic() + timeout
    while client.get(f"/api/menu/progress/{menu_id}").json()["processed_dishes"] < count:
        if time.monotonic() > deadline:
            pytest.fail(f"menu {menu_id} never reached {count} processed dishes")
        time.sleep(0.02)


@pytest.fixture
def client_for(build):
    clients = []

    def _client_for(**kwargs):
        client = TestClient(create_app(container=build(**kwargs)))
        client.__enter__()
        clients.append(client)
        return client

    yield _client_for

    for client in clients:
        client.__exit__(None, None, None)


def test_upload_then_poll_to_complete(client_for, image_bytes):
    client = client_for()

    response = upload(client, image_bytes)

    assert response.status_code == 202
    menu_id = response.json()["menu_id"]
    assert response.json()["status"] == "PENDING"

    body = wait_for(client, menu_id)
    assert body["status"] == "COMPLETE"
    assert body["progress"] == {"processed_dishes": 5, "total_dishes": 5}
    assert "error" not in body

    menu = body["menu"]
    assert menu["currency"] == "USD"
    assert [s["name"] for s in menu["sections"]] == ["Starters", "Mains"]
    mains = menu["sections"][1]["dishes"]
    assert [d["name"] for d in mains] == ["Ribeye Steak", "Catch of the Day", "Mushroom Risotto"]
    assert [d["position"] for d in mains] == [0, 1, 2]
    assert mains[0]["price_cents"] == 3200
    assert mains[1].get("price_cents") is None
    assert mains[1]["raw_price_string"] == "Market Price"
    assert all(d["status"] == "COMPLETE" and d["description"] for d in mains)
    assert menu["ungrouped_dishes"] == []


def test_duplicate_upload_returns_200_with_same_menu(client_for, image_bytes):
    client = client_for()

    first = upload(client, image_bytes)
    wait_for(client, first.json()["menu_id"])
    second = upload(client, image_bytes, filename="same-menu-again.png")

    assert second.status_code == 200
    assert second.json() == {"menu_id": first.json()["menu_id"], "status": "COMPLETE"}


@pytest.mark.parametrize("data, content_type", [
    (b"%PDF-1.4 not an image", "application/pdf"),
    (b"garbage", "image/jpeg"),
])
def test_invalid_upload_is_rejected(client_for, data, content_type):
    client = client_for()

    response = upload(client, data, content_type)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "VALIDATION"


def test_oversized_request_is_rejected(client_for):
    client = client_for()

    response = upload(client, b"\x00" * (3 * 1024 * 1024))

    assert response.status_code == 413


def test_unknown_menu_is_404(client_for):
    client = client_for()

    response = client.get("/api/menu/5b0c8f3e-0000-4000-8000-000000000000")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "NOT_FOUND"


def test_failed_menu_reports_error_as_data(client_for, image_bytes):
    client = client_for(extractor=FakeExtractor('{"sections": []}'))

    menu_id = upload(client, image_bytes).json()["menu_id"]
    body = wait_for(client, menu_id)

    assert body["status"] == "FAILED"
    assert body["error"]["code"] == "STRUCTURE_VALIDATION"
    assert body["error"]["message"]
    assert "menu" not in body and "progress" not in body


def test_progress_endpoint_after_completion(client_for, image_bytes):
    client = client_for()

    menu_id = upload(client, image_bytes).json()["menu_id"]
    wait_for(client, menu_id)
    response = client.get(f"/api/menu/progress/{menu_id}")

    assert response.status_code == 200
    assert response.json() == {
        "menu_id": menu_id,
        "status": "COMPLETE",
        "processed_dishes": 5,
        "total_dishes": 5,
        "progress": 100,
    }
    assert client.get("/api/menu/progress/not-a-menu").status_code == 404


def test_cancel_running_pipeline(client_for, image_bytes):
    client = client_for(descriptions=FakeDescriptions(hang_for={"Tomato Soup"}))

    menu_id = upload(client, image_bytes).json()["menu_id"]
    wait_for_processed(client, menu_id, 4)

    response = client.delete(f"/api/menu/{menu_id}/processing")

    assert response.status_code == 200
    assert response.json() == {"menu_id": menu_id, "status": "FAILED"}
    body = client.get(f"/api/menu/{menu_id}").json()
    assert body["error"]["code"] == "CANCELLED"


def test_cancel_finished_or_unknown_menu(client_for, image_bytes):
    client = client_for()

    menu_id = upload(client, image_bytes).json()["menu_id"]
    wait_for(client, menu_id)

    finished = client.delete(f"/api/menu/{menu_id}/processing")
    unknown = client.delete("/api/menu/not-a-menu/processing")

    assert finished.status_code == 409
    assert finished.json()["detail"]["code"] == "NOT_PROCESSING"
    assert unknown.status_code == 404


def test_progress_websocket_sends_snapshot_and_pong(client_for, image_bytes):
    client = client_for(descriptions=FakeDescriptions(hang_for={"Tomato Soup"}))

    menu_id = upload(client, image_bytes).json()["menu_id"]
    wait_for_processed(client, menu_id, 4)

    with client.websocket_connect(f"/api/menu/ws/progress/{menu_id}") as websocket:
        snapshot = websocket.receive_json()
        assert snapshot["status"] == "PROCESSING"
        assert snapshot["processed_dishes"] == 4
        assert snapshot["total_dishes"] == 5

        websocket.send_text("ping")
        assert websocket.receive_text() == "pong"

    client.delete(f"/api/menu/{menu_id}/processing")


def test_root_and_health(client_for):
    client = client_for()

    root = client.get("/").json()
    health = client.get("/health").json()

    assert root["version"]
    assert health["status"] == "healthy"
    assert health["services"]["database"] == "healthy"
    assert health["running_pipelines"] == 0


def test_distinct_uploads_are_processed_independently(client_for):
    client = client_for()

    first = upload(client, make_image_bytes((10, 120, 10))).json()["menu_id"]
    second = upload(client, make_image_bytes((10, 10, 120))).json()["menu_id"]

    assert first != second
    assert wait_for(client, first)["status"] == "COMPLETE"
    assert wait_for(client, second)["status"] == "COMPLETE"
