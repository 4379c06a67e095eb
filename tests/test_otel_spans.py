from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from app.notifications import PostCommitEffects
from app.otel import setup_inmemory_otel


@pytest.fixture(scope="module")
def exporter() -> InMemorySpanExporter:
    return setup_inmemory_otel()


@pytest.fixture()
def span_exporter(exporter: InMemorySpanExporter) -> InMemorySpanExporter:
    exporter.clear()
    return exporter


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/api/crm/leads", json={"last_name": "Traced"}, headers={"X-Correlation-Id": "otel-corr-1"})

    assert response.status_code == 201
    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_search_emits_one_span_per_module(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    client.post("/api/crm/accounts", json={"name": "Traced Account"})
    span_exporter.clear()

    response = client.post("/api/crm/search", json={"query": "traced", "modules": ["accounts", "contacts"]})

    assert response.status_code == 200
    module_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.search.module"]
    assert sorted(span.attributes.get("search.module") for span in module_spans) == ["accounts", "contacts"]


def test_side_effect_span_marks_failures(span_exporter: InMemorySpanExporter) -> None:
    def explode() -> None:
        raise RuntimeError("mail relay refused")

    effects = PostCommitEffects()
    effects.add("email.ok", lambda: None)
    effects.add("email.broken", explode)
    effects.run()

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "side_effect.run"]
    assert [span.attributes.get("effect") for span in spans] == ["email.ok", "email.broken"]
    assert spans[0].attributes.get("error") is None
    assert spans[1].attributes.get("error") is True
