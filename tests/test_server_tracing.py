"""
端到端：create_app + FastAPI instrumentor + 路由后改名，span 写入内存 exporter。
"""

import pytest
from fastapi.testclient import TestClient
from opentelemetry.trace import SpanKind
from prometheus_client import REGISTRY

from routetrace.api.server import create_app
from routetrace.observability import ConfigurationError


def _server_spans(exporter):
    return [s for s in exporter.get_finished_spans() if s.kind == SpanKind.SERVER]


def _requests_total(route: str, status_code: str = "200") -> float:
    value = REGISTRY.get_sample_value(
        "routetrace_http_requests_total",
        {"method": "GET", "route": route, "status_code": status_code},
    )
    return value or 0.0


@pytest.fixture
def client(memory_exporter, make_settings):
    with TestClient(create_app(make_settings())) as test_client:
        yield test_client


class TestScenario:
    def test_excluded_path_records_no_span(self, client, memory_exporter):
        assert client.get("/health/live").status_code == 200
        assert memory_exporter.get_finished_spans() == ()

    def test_excluded_path_is_case_insensitive(self, client, memory_exporter):
        client.get("/HEALTH")
        assert memory_exporter.get_finished_spans() == ()

    def test_excluded_substring_in_host_is_still_traced(self, memory_exporter, make_settings):
        app = create_app(make_settings(excluded=("/js", "/health")))
        assert app.state.tracing_pipeline.noise_filter("/users/42") is False
        with TestClient(app, base_url="http://js.example.com") as client:
            assert client.get("/users/42").status_code == 200
            assert client.get("/js/app.js").status_code == 404
        [span] = _server_spans(memory_exporter)
        assert span.name == "/users/{id}"

    def test_excluded_substring_in_query_is_still_traced(self, client, memory_exporter):
        assert client.get("/users/42", params={"next": "/health"}).status_code == 200
        assert len(_server_spans(memory_exporter)) == 1

    def test_route_pattern_becomes_span_name(self, client, memory_exporter):
        assert client.get("/users/42").status_code == 200
        assert client.get("/users/7").status_code == 200
        spans = _server_spans(memory_exporter)
        assert [s.name for s in spans] == ["/users/{id}", "/users/{id}"]
        assert all(s.attributes["http.route"] == "/users/{id}" for s in spans)

    def test_unmatched_path_keeps_default_name(self, client, memory_exporter):
        assert client.get("/unknown-path").status_code == 404
        [span] = _server_spans(memory_exporter)
        assert span.name == "GET"
        assert "http.route" not in span.attributes

    def test_error_response_on_matched_route_is_enriched(self, client, memory_exporter):
        assert client.get("/orders/missing").status_code == 404
        [span] = _server_spans(memory_exporter)
        assert span.name == "/orders/{order_id}"


class TestCustomSpans:
    def test_custom_span_is_child_of_server_span(self, client, memory_exporter):
        assert client.get("/orders/A-1").status_code == 200
        spans = memory_exporter.get_finished_spans()
        [custom] = [s for s in spans if s.name == "load_order"]
        [server] = _server_spans(memory_exporter)
        assert custom.instrumentation_scope.name == "MyApp.orders"
        assert custom.parent is not None
        assert custom.parent.span_id == server.context.span_id
        assert custom.attributes["order.id"] == "A-1"


class TestSampling:
    def test_ratio_zero_records_nothing(self, memory_exporter, make_settings):
        with TestClient(create_app(make_settings(ratio=0.0))) as client:
            assert client.get("/users/1").status_code == 200
        assert memory_exporter.get_finished_spans() == ()

    def test_invalid_ratio_prevents_startup(self, make_settings):
        with pytest.raises(ConfigurationError):
            create_app(make_settings(ratio=1.5))

    def test_resource_on_exported_spans(self, client, memory_exporter):
        client.get("/users/1")
        [span] = _server_spans(memory_exporter)
        assert span.resource.attributes["service.name"] == "MyApp"
        assert span.resource.attributes["service.version"] == "1.2.3"


class TestMetricsAndStatus:
    def test_requests_counted_by_route(self, client):
        before = _requests_total("/users/{id}")
        client.get("/users/1")
        client.get("/users/2")
        assert _requests_total("/users/{id}") - before == 2

    def test_unmatched_requests_share_one_label(self, client):
        before = _requests_total("<unmatched>", "404")
        client.get("/nope/1")
        client.get("/nope/2")
        assert _requests_total("<unmatched>", "404") - before == 2

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "routetrace_span_enrichment_total" in response.text

    def test_tracing_status_endpoint(self, client, memory_exporter):
        body = client.get("/health/tracing").json()
        assert body["status"] == "ok"
        assert body["service"] == "MyApp"
        assert body["sources"]["inbound HTTP"] is True
        # /health/tracing 本身也是噪音路径
        assert memory_exporter.get_finished_spans() == ()

    def test_lifespan_shuts_pipeline_down(self, memory_exporter, make_settings):
        app = create_app(make_settings())
        with TestClient(app):
            pass
        assert app.state.tracing_pipeline.status()["shut_down"] is True
