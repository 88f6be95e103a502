"""
Tests for health probes and the metrics endpoint.
"""


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_request_id_header(self, client):
        response = client.get("/health/live")

        assert response.headers["X-Request-ID"]


class TestMetrics:

    def test_exposes_counters(self, client):
        client.post("/webhook", content="{}", headers={"Content-Type": "application/json"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'webhook_requests_total{result="invalid_signature"}' in response.text
        assert "http_requests_total" in response.text
        assert "stale_callbacks_total" in response.text
