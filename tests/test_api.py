"""Tests for the FastAPI application."""

from __future__ import annotations

import json
import threading
import time
import uuid

from fastapi.testclient import TestClient

from fakes import ScriptedLoader

from localrag.api.app import build_dependencies, create_app
from localrag.config import Settings
from localrag.errors import ModelNotFound
from localrag.generation import ModelCache
from localrag.models import PreloadStatus


def _settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "chroma_persist_dir": None,
        "chroma_collection": f"test-{uuid.uuid4().hex}",
        "embedding_dim": 16,
        "chunk_size": 50,
        "chunk_overlap": 10,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _client(loader=None, **overrides) -> TestClient:
    settings = _settings(**overrides)
    cache = ModelCache(loader=loader or ScriptedLoader())
    deps = build_dependencies(settings, model_cache=cache)
    return TestClient(create_app(settings=settings, dependencies=deps))


def _ingest(client: TestClient, file_name: str, text: str) -> dict:
    response = client.post("/documents/text", json={"file_name": file_name, "text": text})
    assert response.status_code == 201
    return response.json()


def test_healthz_and_correlation_header():
    client = _client()
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["environment"] == "test"
    assert response.headers["X-Correlation-ID"] == "req-123"


def test_metrics_endpoint_exposes_pipeline_metrics():
    client = _client()
    _ingest(client, "report.txt", "Revenue grew in the third quarter.")
    body = client.get("/metrics").text
    assert "localrag_ingestion_duration_seconds" in body
    assert "localrag_embedded_texts_total" in body


def test_ingest_search_and_delete_document():
    client = _client()
    summary = _ingest(client, "report.txt", "Revenue growth was strong this year.")
    _ingest(client, "notes.txt", "Meeting notes about hiring plans.")
    assert summary["chunk_count"] == 1

    response = client.post("/search", json={"query": "revenue growth", "top_k": 1})
    assert response.status_code == 200
    results = response.json()["results"]
    assert len(results) == 1

    response = client.delete(f"/documents/{summary['document_id']}")
    assert response.json() == {"document_id": summary["document_id"], "removed_chunks": 1}
    assert client.delete(f"/documents/{summary['document_id']}").status_code == 404


def test_blank_text_is_rejected():
    client = _client()
    response = client.post("/documents/text", json={"file_name": "blank.txt", "text": "   "})
    assert response.status_code == 400


def test_query_without_model_returns_passages():
    client = _client()
    _ingest(client, "report.txt", "Revenue growth was strong this year.")
    response = client.post("/query", json={"question": "How was revenue?"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["answer"].startswith("Based on your documents")
    assert payload["citations"][0]["file_name"] == "report.txt"
    assert payload["stop_reason"] is None


def test_query_with_model_generates_answer():
    loader = ScriptedLoader(["Revenue", " grew."])
    client = _client(loader)
    _ingest(client, "report.txt", "Revenue growth was strong this year.")
    response = client.post(
        "/query",
        json={
            "question": "How was revenue?",
            "model_path": "/models/qwen",
            "history": [{"role": "user", "content": "hello"}],
        },
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["answer"] == "Revenue grew."
    assert payload["stop_reason"] == "end_of_generation"
    assert loader.loaded == ["/models/qwen"]

    status = client.get("/models/status").json()
    assert status["loaded"] is True
    assert status["model_path"] == "/models/qwen"
    assert status["prompt_cache"]["has_entry"] is True


def test_query_stream_emits_tokens_then_completion():
    client = _client(ScriptedLoader(["Hello", " world"]))
    response = client.post("/query/stream", json={"question": "Say hi", "model_path": "/models/qwen"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    body = response.text
    assert body.startswith(": heartbeat")
    tokens = [
        json.loads(line[len("data: ") :])["text"]
        for line in body.splitlines()
        if line.startswith("data: ") and '"text"' in line and "query_id" not in line
    ]
    assert "".join(tokens) == "Hello world"
    assert "event: complete" in body


def test_query_stream_reports_errors_as_events():
    client = _client(ScriptedLoader(prompt_tokens=7001))
    response = client.post("/query/stream", json={"question": "Too long", "model_path": "/models/qwen"})
    assert response.status_code == 200
    assert "event: error" in response.text
    assert "PromptTooLarge" in response.text


def test_generation_errors_map_to_status_codes():
    def missing(path: str):
        raise ModelNotFound(f"Model not found at {path}")

    response = _client(missing).post("/query", json={"question": "Hi", "model_path": "/nowhere"})
    assert response.status_code == 404
    assert response.json()["error"] == "ModelNotFound"

    response = _client(ScriptedLoader(prompt_tokens=7001)).post(
        "/query", json={"question": "Hi", "model_path": "/models/qwen"}
    )
    assert response.status_code == 413


def test_preload_status_and_clear_models():
    client = _client()
    response = client.post("/models/preload", json={"model_path": "/models/qwen"})
    assert response.status_code == 202

    cache: ModelCache = client.app.state.dependencies.model_cache
    for _ in range(100):
        if cache.preload_status() is PreloadStatus.LOADED:
            break
        time.sleep(0.01)
    status = client.get("/models/status").json()
    assert status["loaded"] is True
    assert status["preload_status"] == "loaded"

    assert client.post("/generation/stop").status_code == 202
    assert client.delete("/models").status_code == 204
    assert client.get("/models/status").json()["loaded"] is False


def test_status_and_stop_stay_responsive_during_generation():
    pieces = [f" word{index}" for index in range(400)]
    client = _client(ScriptedLoader(pieces, delay=0.01))
    responses = {}

    def ask() -> None:
        responses["query"] = client.post(
            "/query", json={"question": "Tell me everything", "model_path": "/models/qwen", "max_tokens": 400}
        )

    with client:
        worker = threading.Thread(target=ask)
        worker.start()
        time.sleep(0.3)

        started = time.perf_counter()
        status = client.get("/models/status")
        assert status.status_code == 200
        assert status.json()["loaded"] is True
        assert client.post("/generation/stop").status_code == 202
        assert time.perf_counter() - started < 1.0

        worker.join(timeout=10)
    payload = responses["query"].json()
    assert payload["stop_reason"] == "cancelled"
    assert len(payload["answer"].split()) < 400
