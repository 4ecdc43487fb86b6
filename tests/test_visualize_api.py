from __future__ import annotations

from fastapi.testclient import TestClient

import main
from visual_fakes import StubStructureClient, build_pipeline
from visualize import pipeline as pipeline_module
from visualize.failures import RemoteFetchError


def _install_pipeline(monkeypatch, client: StubStructureClient | None = None):
    pipeline, factories = build_pipeline(client=client)
    monkeypatch.setattr(pipeline_module, "_PIPELINE", pipeline)
    return pipeline, factories


def test_create_visualization_renders_and_then_hits_cache(monkeypatch) -> None:
    client = StubStructureClient()
    pipeline, _ = _install_pipeline(monkeypatch, client)
    body = {
        "kind": "cid",
        "identifier": "2244",
        "representation_style": "stick",
        "selections": [{"region": "resi 1", "style": "sphere"}],
        "title": "Aspirin <acetylsalicylic acid>",
    }

    with TestClient(main.app) as http:
        first = http.post("/visualizations", json=body)
        assert first.status_code == 200, first.text
        payload = first.json()
        assert payload["status"] == "success"
        assert payload["cache_hit"] is False
        assert payload["fingerprint"].startswith("cid:2244:stick:element:")
        assert "<figcaption>Aspirin &lt;acetylsalicylic acid&gt;</figcaption>" in payload["html"]
        assert first.headers.get("X-Trace-Id")

        second = http.post("/visualizations", json=body)
        assert second.status_code == 200, second.text
        assert second.json()["cache_hit"] is True

        forced = http.post("/visualizations", json={**body, "force": True})
        assert forced.json()["cache_hit"] is False

    assert len(client.calls) == 1
    assert len(pipeline.render_cache) == 1


def test_invalid_identifier_maps_to_422_with_hint(monkeypatch) -> None:
    _install_pipeline(monkeypatch)
    with TestClient(main.app) as http:
        response = http.post("/visualizations", json={"kind": "pdb", "identifier": "not-a-pdb-id"})
    assert response.status_code == 422, response.text
    payload = response.json()
    assert payload["status"] == "error"
    assert payload["error_code"] == "INVALID_IDENTIFIER"
    assert payload["hint"]
    assert payload["trace_id"]


def test_remote_fetch_error_maps_to_502(monkeypatch) -> None:
    _install_pipeline(monkeypatch, StubStructureClient(error=RemoteFetchError(404, "stub://cid/1")))
    with TestClient(main.app) as http:
        response = http.post("/visualizations", json={"kind": "cid", "identifier": "1"})
    assert response.status_code == 502, response.text
    assert response.json()["error_code"] == "REMOTE_FETCH_ERROR"


def test_unknown_kind_is_rejected_by_request_validation(monkeypatch) -> None:
    _install_pipeline(monkeypatch)
    with TestClient(main.app) as http:
        response = http.post("/visualizations", json={"kind": "uniprot", "identifier": "P69905"})
    assert response.status_code == 422


def test_invalidate_and_cache_overview(monkeypatch) -> None:
    client = StubStructureClient()
    _install_pipeline(monkeypatch, client)
    with TestClient(main.app) as http:
        created = http.post("/visualizations", json={"kind": "name", "identifier": "caffeine"}).json()

        overview = http.get("/visualizations/cache").json()
        assert overview["payload"]["size"] == 1
        assert overview["render"]["size"] == 1
        assert overview["dependencies"]["py3Dmol"] == "loaded"

        removed = http.post(
            "/visualizations/invalidate",
            json={"kind": "name", "identifier": "caffeine", "fingerprint": created["fingerprint"]},
        ).json()
        assert removed == {"removed": {"payload": 1, "render": 1}}

        again = http.post("/visualizations", json={"kind": "name", "identifier": "caffeine"}).json()
        assert again["cache_hit"] is False
    assert len(client.calls) == 2


def test_invalidate_by_identifier_and_clear_all(monkeypatch) -> None:
    client = StubStructureClient()
    pipeline, _ = _install_pipeline(monkeypatch, client)
    with TestClient(main.app) as http:
        http.post("/visualizations", json={"kind": "cid", "identifier": "2244"})
        http.post("/visualizations", json={"kind": "cid", "identifier": "2244", "representation_style": "sphere"})
        http.post("/visualizations", json={"kind": "cid", "identifier": "702"})

        by_identifier = http.post("/visualizations/invalidate", json={"kind": "cid", "identifier": "2244"})
        assert by_identifier.status_code == 200, by_identifier.text
        assert by_identifier.json() == {"removed": {"payload": 1, "render": 2}}

        again = http.post("/visualizations", json={"kind": "cid", "identifier": "2244"}).json()
        assert again["cache_hit"] is False

        cleared = http.post("/visualizations/invalidate", json={}).json()
        assert cleared == {"removed": {"payload": 2, "render": 2}}
    assert len(client.calls) == 3
    assert len(pipeline.render_cache) == 0


def test_health_and_runtime_metrics(monkeypatch) -> None:
    _install_pipeline(monkeypatch)
    with TestClient(main.app) as http:
        http.post("/visualizations", json={"kind": "cid", "identifier": "2244"})
        health = http.get("/health")
        assert health.status_code == 200
        assert health.json()["status"] == "ok"

        snapshot = http.get("/metrics/runtime").json()
    assert snapshot["requests_total"] >= 1
    assert "visualize.render_cache.miss" in snapshot["custom_counters"]
    for stage in ("loading_dependencies", "resolving_payload", "rendering"):
        assert f"visualize.stage.{stage}_ms" in snapshot["custom_timers"]


def test_unhandled_exceptions_are_normalized(monkeypatch) -> None:
    def _boom(*_args, **_kwargs):
        raise RuntimeError("boom: should not leak")

    monkeypatch.setattr(main, "cache_overview", _boom)
    with TestClient(main.app, raise_server_exceptions=False) as http:
        response = http.get("/visualizations/cache")
    assert response.status_code == 500
    payload = response.json()
    assert payload["error_code"] == "INTERNAL_SERVER_ERROR"
    assert "boom" not in response.text
    assert payload["trace_id"]
