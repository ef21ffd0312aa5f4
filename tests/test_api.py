"""
API endpoint tests
"""
import pytest
from fastapi.testclient import TestClient

from salesbot_engine.api import create_app

from conftest import chain, make_flow


FLOW = make_flow(
    [
        {"id": "hello", "type": "send_message", "data": {"message": "Olá {{lead.name}}"}},
        {"id": "wait", "type": "wait", "data": {"wait_mode": "message"}},
        {"id": "tag", "type": "tag", "data": {"tag_id": "respondeu"}},
    ],
    chain("hello", "wait", "tag"),
    id="api-flow",
    trigger={"type": "stage_entered", "stage": "qualified"},
)


class TestFlowAPI:

    @pytest.fixture
    def client(self, engine):
        with TestClient(create_app(engine)) as client:
            yield client

    def test_root_and_health(self, client):
        assert client.get("/").json()["status"] == "running"
        health = client.get("/api/v1/monitoring/health").json()
        assert health["status"] == "healthy"
        assert health["scheduler_running"] is True

    def test_request_id_header(self, client):
        response = client.get("/", headers={"X-Request-ID": "wh-123"})
        assert response.headers["X-Request-ID"] == "wh-123"
        assert float(response.headers["X-Process-Time"]) >= 0

        generated = client.get("/").headers["X-Request-ID"]
        assert len(generated) == 32

    def test_publish_and_get_flow(self, client):
        response = client.post("/api/v1/flows", json={"flow": FLOW})
        assert response.status_code == 201
        assert response.json() == {"id": "api-flow", "version": 1, "workspace_id": "ws-1"}

        flow = client.get("/api/v1/flows/api-flow").json()
        assert flow["version"] == 1
        assert [node["id"] for node in flow["nodes"]] == ["hello", "wait", "tag"]
        assert client.get("/api/v1/flows/api-flow", params={"version": 2}).status_code == 404

    def test_publish_invalid_flow(self, client):
        broken = make_flow([{"id": "v1", "type": "validate", "data": {}}], id="broken")
        response = client.post("/api/v1/flows", json={"flow": broken})
        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "flow_invalid"
        assert {issue["kind"] for issue in body["issues"]} == {"missing_branch"}

    def test_bad_node_data(self, client):
        bad = make_flow([{"id": "w1", "type": "wait", "data": {"wait_mode": "forever"}}], id="bad")
        response = client.post("/api/v1/flows", json={"flow": bad})
        assert response.status_code == 422
        assert response.json()["node_id"] == "w1"

    def test_validate_endpoint(self, client):
        broken = make_flow([{"id": "v1", "type": "validate", "data": {}}], id="broken")
        report = client.post("/api/v1/flows/validate", json={"flow": broken}).json()
        assert report["valid"] is False
        assert len(report["issues"]) == 2
        assert client.post("/api/v1/flows/validate", json={"flow": FLOW}).json() == {"valid": True, "issues": []}

    def test_unpublish(self, client):
        client.post("/api/v1/flows", json={"flow": FLOW})
        assert client.delete("/api/v1/flows/api-flow").json() == {"flow_id": "api-flow", "is_active": False}
        assert client.delete("/api/v1/flows/missing").status_code == 404


class TestExecutionAPI:

    @pytest.fixture
    def client(self, engine):
        with TestClient(create_app(engine)) as client:
            client.post("/api/v1/flows", json={"flow": FLOW})
            yield client

    def test_run_conversation(self, client, messaging, crm):
        response = client.post("/api/v1/executions", json={"flow_id": "api-flow", "lead_id": "lead-1"})
        assert response.status_code == 202
        execution = response.json()
        assert execution["status"] == "waiting"
        assert execution["current_node_id"] == "wait"
        assert messaging.sent[0].content == "Olá Maria"

        response = client.post("/api/v1/events/messages", json={"lead_id": "lead-1", "text": "oi", "message_id": "w1"})
        body = response.json()
        assert body["dispatched"] == 1
        assert body["results"][0]["status"] == "completed"
        assert "respondeu" in crm.leads["lead-1"].tags

        status = client.get(f"/api/v1/executions/{execution['execution_id']}").json()
        assert status["mutations"][0]["type"] == "add_tag"

    def test_advance_and_cancel(self, client):
        execution = client.post("/api/v1/executions", json={"flow_id": "api-flow", "lead_id": "lead-1"}).json()
        execution_id = execution["execution_id"]

        advanced = client.post(f"/api/v1/executions/{execution_id}/advance").json()
        assert advanced["applied"] is True
        assert advanced["status"] == "completed"

        response = client.post(f"/api/v1/executions/{execution_id}/cancel", json={"reason": "late"})
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state"

    def test_cancel_waiting_execution(self, client):
        execution = client.post("/api/v1/executions", json={"flow_id": "api-flow", "lead_id": "lead-1"}).json()
        response = client.post(f"/api/v1/executions/{execution['execution_id']}/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "stopped"
        assert response.json()["error"]["message"] == "cancelled"

    def test_lead_event_trigger(self, client):
        started = client.post("/api/v1/events/lead", json={
            "workspace_id": "ws-1", "lead_id": "lead-1",
            "event_type": "stage_entered", "value": "qualified",
        }).json()["started"]
        assert [s["flow_id"] for s in started] == ["api-flow"]
        assert started[0]["status"] == "waiting"

    def test_keyword_message_starts_flow(self, client, messaging):
        keyword_flow = make_flow(
            [{"id": "promo", "type": "send_message", "data": {"message": "Temos promoção!"}}],
            id="promo-flow",
            trigger={"type": "keyword", "keyword": "promo", "instance_name": "vendas"},
        )
        assert client.post("/api/v1/flows", json={"flow": keyword_flow}).status_code == 201

        message = {"workspace_id": "ws-1", "lead_id": "lead-1", "text": "tem PROMO hoje?"}
        body = client.post("/api/v1/events/messages", json={**message, "instance_name": "suporte"}).json()
        assert body["dispatched"] == 0

        body = client.post("/api/v1/events/messages", json={**message, "instance_name": "vendas"}).json()
        assert body["dispatched"] == 1
        assert body["results"][0]["reason"] == "triggered"
        assert body["results"][0]["status"] == "completed"
        assert messaging.sent[-1].content == "Temos promoção!"

        flow = client.get("/api/v1/flows/promo-flow").json()
        assert flow["executions_count"] == 1
        assert flow["trigger"]["instance_name"] == "vendas"

    def test_not_found(self, client):
        assert client.get("/api/v1/executions/missing").status_code == 404
        assert client.post("/api/v1/executions/missing/advance").status_code == 404
        response = client.post("/api/v1/executions", json={"flow_id": "missing", "lead_id": "lead-1"})
        assert response.status_code == 404
        assert response.json()["error"] == "flow_not_found"

    def test_messaging_outage_is_503(self, client, messaging):
        messaging.fail_next = 100
        response = client.post("/api/v1/executions", json={"flow_id": "api-flow", "lead_id": "lead-1"})
        assert response.status_code == 503
        assert response.json()["error"] == "service_unavailable"

    def test_metrics(self, client):
        client.post("/api/v1/executions", json={"flow_id": "api-flow", "lead_id": "lead-1"})
        metrics = client.get("/api/v1/monitoring/metrics").json()
        assert metrics["counters"]["executions_started"] == {"flow_id=api-flow": 1.0}
        send_steps = metrics["timings"]["node_step_seconds"]["node_type=send_message"]
        assert send_steps["count"] == 1
        assert send_steps["max"] >= send_steps["avg"] >= 0
