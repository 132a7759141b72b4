import json

import pytest

import db
import generation
import tryon_cli
from conftest import FakeClient


@pytest.fixture
def catalog(tmp_db, tmp_path):
    entries = []
    for i in range(1, 5):
        image = tmp_path / f"p{i}.jpg"
        image.write_bytes(b"jpeg-" + str(i).encode())
        entries.append({"id": f"p{i}", "name": f"Product {i}", "category": "Tops", "image_url": str(image)})
    entries[0]["colors"] = [
        {"color_name": "Red", "color_hex": "#ff0000", "image_url": str(tmp_path / "p1.jpg"), "is_default": True},
    ]
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(entries))
    return path


@pytest.fixture
def shopper(tmp_path):
    path = tmp_path / "me.png"
    path.write_bytes(b"shopper-png")
    return path


@pytest.fixture
def fake_backend(monkeypatch):
    holder = {}

    def build(settings=None):
        holder["settings"] = settings
        holder["client"] = FakeClient(**{"data_uri": True, **holder.get("kwargs", {})})
        return holder["client"]

    monkeypatch.setattr(generation, "build_client", build)
    return holder


def test_import_catalog(catalog):
    assert tryon_cli.main(["--import-catalog", str(catalog)]) == 0
    rows = db.list_active_products()
    assert [r["id"] for r in rows] == ["p1", "p2", "p3", "p4"]
    assert rows[0]["color_name"] == "Red"


def test_bad_catalog_is_config_error(tmp_db, tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps({"id": "not-a-list"}))
    assert tryon_cli.main(["--import-catalog", str(path)]) == 2


def test_set_stores_json_and_plain_strings(tmp_db):
    code = tryon_cli.main([
        "--set", 'generation={"retry_delay": 0, "max_attempts": 3}',
        "--set", "prompt_template=Wear {{product_name}}",
    ])
    assert code == 0
    assert db.get_setting("generation") == {"retry_delay": 0, "max_attempts": 3}
    assert db.get_setting("prompt_template") == "Wear {{product_name}}"


def test_set_rejects_missing_key(tmp_db):
    assert tryon_cli.main(["--set", "no-equals-sign"]) == 2


def test_full_run_saves_images_and_report(catalog, shopper, tmp_path, fake_backend, capsys):
    out_dir = tmp_path / "out"
    code = tryon_cli.main([
        "--import-catalog", str(catalog),
        "--photo", str(shopper),
        "--retry-delay", "0",
        "--output-dir", str(out_dir),
        "--report",
        "--json",
    ])
    assert code == 0

    client = fake_backend["client"]
    assert sorted(client.calls) == ["p1", "p2", "p3", "p4"]
    assert client.requests[0].source_photo.mime_type == "image/png"
    assert {r.product_id: r.color_name for r in client.requests}["p1"] == "Red"

    [run_dir] = out_dir.iterdir()
    assert sorted(p.name for p in run_dir.glob("*.png")) == ["p1.png", "p2.png", "p3.png", "p4.png"]
    assert (run_dir / "p2.png").read_bytes() == b"png-p2"
    assert "Your try-on gallery" in (run_dir / "report.html").read_text()

    stdout = capsys.readouterr().out
    payload, _ = json.JSONDecoder().raw_decode(stdout[stdout.index("{"):])
    assert payload["phase"] == "settled"
    assert payload["success_count"] == 4
    assert payload["saved_images"]["p1"].endswith("p1.png")


def test_run_with_no_successes_exits_one(catalog, shopper, tmp_path, fake_backend):
    fake_backend["kwargs"] = {"default": "app"}
    code = tryon_cli.main([
        "--import-catalog", str(catalog),
        "--photo", str(shopper),
        "--retry-delay", "0",
        "--output-dir", str(tmp_path / "out"),
    ])
    assert code == 1


def test_selected_products_only(catalog, shopper, tmp_path, fake_backend):
    tryon_cli.main(["--import-catalog", str(catalog)])
    code = tryon_cli.main([
        "--photo", str(shopper),
        "--product", "p3", "--product", "missing",
        "--retry-delay", "0",
        "--output-dir", str(tmp_path / "out"),
    ])
    assert code == 0
    assert dict(fake_backend["client"].calls) == {"p3": 1}


def test_stored_policy_and_flags_combine(catalog, shopper, tmp_path, fake_backend, monkeypatch):
    captured = {}
    real_policy = tryon_cli.tryon_core.RunPolicy.from_settings

    def spy(settings):
        captured.update(settings)
        return real_policy(settings)

    monkeypatch.setattr(tryon_cli.tryon_core.RunPolicy, "from_settings", spy)
    db.init_db()
    db.upsert_setting("generation", {"priority_size": 2, "retry_delay": 7})
    db.upsert_setting("provider", {"provider": "http", "endpoint_url": "https://tryon.test/gen"})

    tryon_cli.main([
        "--import-catalog", str(catalog),
        "--photo", str(shopper),
        "--retry-delay", "0",
        "--output-dir", str(tmp_path / "out"),
    ])
    assert captured == {"priority_size": 2, "retry_delay": 0.0}
    assert fake_backend["settings"]["endpoint_url"] == "https://tryon.test/gen"


def test_missing_photo_is_config_error(catalog, tmp_path):
    assert tryon_cli.main(["--import-catalog", str(catalog), "--photo", str(tmp_path / "nope.jpg")]) == 2


def test_empty_catalog_is_config_error(tmp_db, shopper):
    assert tryon_cli.main(["--photo", str(shopper)]) == 2


def test_provider_error_is_config_error(catalog, shopper, monkeypatch):
    monkeypatch.delenv("TRYON_ENDPOINT_URL", raising=False)
    monkeypatch.delenv("TRYON_PROVIDER", raising=False)
    assert tryon_cli.main(["--import-catalog", str(catalog), "--photo", str(shopper)]) == 2


def test_list_products(catalog, capsys):
    tryon_cli.main(["--import-catalog", str(catalog)])
    capsys.readouterr()
    assert tryon_cli.main(["--list-products"]) == 0
    out = capsys.readouterr().out
    assert "Product 1" in out and "[Red]" in out
