import io
import time

import pytest

import db
from conftest import FakeClient, seed_catalog


@pytest.fixture
def web(tmp_db, tmp_path, monkeypatch):
    import app as app_module

    images = tmp_path / "catalog"
    images.mkdir()
    products = []
    for i, (name, category) in enumerate([("Hoodie", "Tops"), ("Tee", "Tops"), ("Beanie", "Hats")], 1):
        path = images / f"p{i}.jpg"
        path.write_bytes(b"jpeg-%d" % i)
        products.append({"id": f"p{i}", "name": name, "category": category, "image_url": str(path)})
    seed_catalog(products)

    monkeypatch.setattr(app_module, "_coordinator", None)
    monkeypatch.setattr(app_module, "_coordinator_settings", None)
    monkeypatch.setattr(app_module, "BASE_DIR", tmp_path)
    monkeypatch.setattr(app_module, "IMAGES_DIR", tmp_path / "static" / "images")

    backend = {"builds": []}

    def build(settings=None):
        backend["client"] = FakeClient(data_uri=True)
        backend["builds"].append(settings)
        return backend["client"]

    monkeypatch.setattr(app_module.generation, "build_client", build)
    app_module.app.config["TESTING"] = True
    yield app_module, app_module.app.test_client(), backend
    if app_module._coordinator is not None:
        app_module._loop.call(app_module._coordinator.close)


def _wait_for(fetch, done, timeout=5.0):
    deadline = time.time() + timeout
    while True:
        value = fetch()
        if done(value):
            return value
        if time.time() > deadline:
            raise AssertionError(f"gave up waiting, last value: {value!r}")
        time.sleep(0.01)


def _photo(data=b"shopper-bytes", name="me.png"):
    return (io.BytesIO(data), name)


def test_index_page(web):
    _, client, _ = web
    resp = client.get("/")
    assert resp.status_code == 200
    assert b"Virtual Try-On" in resp.data


def test_products_and_categories(web):
    _, client, _ = web
    products = client.get("/api/products").get_json()["products"]
    assert [p["id"] for p in products] == ["p1", "p2", "p3"]

    hats = client.get("/api/products?category=Hats").get_json()["products"]
    assert [p["name"] for p in hats] == ["Beanie"]

    assert client.get("/api/categories").get_json() == {"categories": ["Hats", "Tops"]}


def test_state_before_any_run(web):
    _, client, _ = web
    state = client.get("/api/state").get_json()
    assert state["phase"] == "idle"
    assert state["total_count"] == 0


def test_try_on_requires_photo(web):
    _, client, _ = web
    resp = client.post("/api/try-on", data={}, content_type="multipart/form-data")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "photo is required"


def test_try_on_rejects_empty_photo(web):
    _, client, _ = web
    resp = client.post("/api/try-on", data={"photo": _photo(b"")}, content_type="multipart/form-data")
    assert resp.status_code == 400


def test_try_on_without_matching_products(web):
    _, client, _ = web
    resp = client.post(
        "/api/try-on",
        data={"photo": _photo(), "category": "Shoes"},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 400
    assert "no products" in resp.get_json()["error"]


def test_try_on_with_unconfigured_backend(web, monkeypatch):
    app_module, client, _ = web

    def broken(settings=None):
        raise RuntimeError("TRYON_ENDPOINT_URL not set")

    monkeypatch.setattr(app_module.generation, "build_client", broken)
    resp = client.post("/api/try-on", data={"photo": _photo()}, content_type="multipart/form-data")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "TRYON_ENDPOINT_URL not set"


def test_try_on_runs_and_records_history(web, tmp_path):
    app_module, client, backend = web

    resp = client.post("/api/try-on", data={"photo": _photo()}, content_type="multipart/form-data")
    assert resp.status_code == 200
    body = resp.get_json()
    run_id = body["run_id"]
    assert isinstance(run_id, str)
    assert body["total"] == 3

    state = _wait_for(lambda: client.get("/api/state").get_json(), lambda s: s["phase"] == "settled")
    assert state["run_id"] == run_id
    assert state["success_count"] == 3
    assert state["priority_batch_settled"] is True

    run = _wait_for(lambda: db.get_run(run_id), lambda r: r and r["status"] == "complete")
    assert run["success_count"] == 3
    assert run["results"]["p1"] == {"status": "ready", "image_url": f"/static/images/{run_id}/p1.png"}
    assert (tmp_path / "static" / "images" / run_id / "p1.png").read_bytes() == b"png-p1"

    image = client.get(f"/static/images/{run_id}/p2.png")
    assert image.status_code == 200
    assert image.data == b"png-p2"

    listed = client.get("/api/runs").get_json()
    assert [r["id"] for r in listed] == [run_id]
    assert client.get(f"/api/runs/{run_id}").get_json()["total"] == 3

    photo = backend["client"].requests[0].source_photo
    assert photo.data == b"shopper-bytes"
    assert photo.filename == "me.png"


def test_try_on_selected_products(web):
    _, client, backend = web
    resp = client.post(
        "/api/try-on",
        data={"photo": _photo(), "product_ids": ["p3", "p1"]},
        content_type="multipart/form-data",
    )
    assert resp.get_json()["total"] == 2
    _wait_for(lambda: client.get("/api/state").get_json(), lambda s: s["phase"] == "settled")
    assert sorted(backend["client"].calls) == ["p1", "p3"]


def test_second_request_supersedes_first(web):
    _, client, _ = web
    first = client.post("/api/try-on", data={"photo": _photo()}, content_type="multipart/form-data")
    second = client.post("/api/try-on", data={"photo": _photo(b"other")}, content_type="multipart/form-data")
    first_id, second_id = first.get_json()["run_id"], second.get_json()["run_id"]
    assert int(second_id) > int(first_id)

    state = _wait_for(lambda: client.get("/api/state").get_json(), lambda s: s["phase"] == "settled")
    assert state["run_id"] == second_id
    _wait_for(lambda: db.get_run(second_id), lambda r: r and r["status"] == "complete")
    assert db.get_run(first_id)["status"] in ("superseded", "complete")


def test_changed_settings_rebuild_coordinator_between_runs(web):
    app_module, client, backend = web

    def run_once():
        client.post("/api/try-on", data={"photo": _photo()}, content_type="multipart/form-data")
        return _wait_for(lambda: client.get("/api/state").get_json(), lambda s: s["phase"] == "settled")

    run_once()
    first = app_module._coordinator
    run_once()
    assert app_module._coordinator is first
    assert len(backend["builds"]) == 1

    db.upsert_setting("generation", {"priority_size": 1, "retry_delay": 0})
    db.upsert_setting("prompt_template", "Wear {{product_name}}")
    state = run_once()

    assert app_module._coordinator is not first
    assert app_module._coordinator.policy.priority_size == 1
    assert backend["builds"][-1]["prompt_template"] == "Wear {{product_name}}"
    assert first.state.phase == "idle"
    assert state["success_count"] == 3


def test_unknown_run_is_404(web):
    _, client, _ = web
    assert client.get("/api/runs/does-not-exist").status_code == 404


def test_events_reach_open_streams(web):
    app_module, _, _ = web
    client_id, q = app_module._open_stream()
    try:
        app_module._on_results_ready(42)
        assert q.get_nowait() == {"type": "results_ready", "run_id": "42"}
    finally:
        app_module._close_stream(client_id)
    assert client_id not in app_module._stream_queues
