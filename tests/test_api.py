"""
Integration tests for the ReScrub HTTP endpoints.
"""
from datetime import datetime

import pytest

from rescrub.dependencies import get_evidence
from rescrub.main import app
from rescrub.models import EvidenceRecordModel, InboundMessageModel
from rescrub.pipeline.evidence import EvidenceCollector

NEW_REQUEST = {
    "subject_ref": "subject-1",
    "broker_ref": "ООО «Брокер данных»",
    "operator_email": "dpo@broker.example",
    "subject_email": "subject@example.ru",
}
CONFIRMATION = "Добрый день!\nВаши данные успешно удалены из нашей системы."
REFUSAL = "Мы не можем удалить ваши данные."


def _create(client):
    resp = client.post("/api/requests", json=NEW_REQUEST)
    assert resp.status_code == 200
    return resp.json()


def _create_sent(client):
    request_id = _create(client)["id"]
    resp = client.post(f"/api/requests/{request_id}/send")
    assert resp.status_code == 200
    return request_id


class TestRequests:
    def test_create(self, client):
        body = _create(client)
        assert body["status"] == "PENDING"
        assert body["tracking_id"].startswith("RS-")
        assert body["follow_up_count"] == 0

    def test_get_not_found(self, client):
        resp = client.get("/api/requests/nonexistent")
        assert resp.status_code == 404

    def test_send(self, client):
        request_id = _create_sent(client)
        body = client.get(f"/api/requests/{request_id}").json()
        assert body["status"] == "AWAITING_RESPONSE"
        assert body["first_sent_at"] is not None
        assert body["next_follow_up_at"] is not None

    def test_send_twice_conflicts(self, client):
        request_id = _create_sent(client)
        resp = client.post(f"/api/requests/{request_id}/send")
        assert resp.status_code == 409

    def test_list_by_status(self, client):
        _create(client)
        _create_sent(client)
        resp = client.get("/api/requests", params={"status": "PENDING"})
        assert resp.status_code == 200
        assert len(resp.json()) == 1
        assert len(client.get("/api/requests").json()) == 2

    def test_timeline(self, client):
        request_id = _create_sent(client)
        events = [e["event"] for e in client.get(f"/api/requests/{request_id}/timeline").json()]
        assert "CREATED" in events
        assert "SENT" in events


class TestMessages:
    def test_confirmation_closes_request(self, client):
        request_id = _create_sent(client)
        resp = client.post(f"/api/requests/{request_id}/messages", json={"content": CONFIRMATION})
        assert resp.status_code == 200
        body = resp.json()
        assert body["analysis"]["classification"] == "POSITIVE"
        assert body["decision"]["action"] == "AUTO_CLOSE"
        assert body["request"]["status"] == "COMPLETED"
        assert body["packet"] is None

        decisions = client.get(f"/api/requests/{request_id}/decisions").json()
        assert len(decisions) == 1

    def test_refusal_escalates_with_packet(self, client):
        request_id = _create_sent(client)
        body = client.post(f"/api/requests/{request_id}/messages", json={"content": REFUSAL}).json()
        assert body["decision"]["action"] == "ESCALATE_TO_REGULATOR"
        assert body["request"]["status"] == "ESCALATED"
        assert body["packet"]["status"] == "FINALIZED"

        packets = client.get("/api/packets", params={"status": "FINALIZED"}).json()
        assert len(packets) == 1

    def test_reply_to_closed_request_conflicts(self, client):
        request_id = _create_sent(client)
        client.post(f"/api/requests/{request_id}/messages", json={"content": CONFIRMATION})
        resp = client.post(f"/api/requests/{request_id}/messages", json={"content": REFUSAL})
        assert resp.status_code == 409

    def test_reply_before_send_conflicts(self, client):
        request_id = _create(client)["id"]
        resp = client.post(f"/api/requests/{request_id}/messages", json={"content": CONFIRMATION})
        assert resp.status_code == 409

    def test_empty_reply_rejected(self, client):
        request_id = _create_sent(client)
        resp = client.post(f"/api/requests/{request_id}/messages", json={"content": "   "})
        assert resp.status_code == 400
        assert client.get(f"/api/requests/{request_id}/evidence").json() == []

    def test_offset_timestamp_stored_as_utc(self, client, db):
        request_id = _create_sent(client)
        resp = client.post(f"/api/requests/{request_id}/messages", json={
            "content": CONFIRMATION,
            "received_at": "2024-03-04T12:00:00+03:00",
        })
        assert resp.status_code == 200
        stored = db.query(InboundMessageModel).filter(InboundMessageModel.request_id == request_id).one()
        assert stored.received_at == datetime(2024, 3, 4, 9, 0)


class TestEvidence:
    def test_list_and_verify(self, client):
        request_id = _create_sent(client)
        client.post(f"/api/requests/{request_id}/messages", json={"content": CONFIRMATION})
        records = client.get(f"/api/requests/{request_id}/evidence").json()
        assert len(records) == 1
        assert records[0]["document_type"] == "EMAIL_EVIDENCE"

        resp = client.post(f"/api/evidence/{records[0]['id']}/verify")
        assert resp.status_code == 200
        assert resp.json()["valid"] is True

    def test_verify_unknown_record(self, client):
        resp = client.post("/api/evidence/nonexistent/verify")
        assert resp.status_code == 404

    def test_verify_chain(self, client, db):
        request_id = _create_sent(client)
        client.post(f"/api/requests/{request_id}/messages", json={"content": "Ваш запрос находится на рассмотрении."})
        client.post(f"/api/requests/{request_id}/messages", json={"content": "Ваш запрос находится на рассмотрении."})
        resp = client.post(f"/api/requests/{request_id}/evidence/verify")
        assert resp.status_code == 200
        assert resp.json()["valid"] is True
        assert resp.json()["records"] == 2

        first = db.query(EvidenceRecordModel).filter(EvidenceRecordModel.chain_position == 1).one()
        db.delete(first)
        db.commit()
        body = client.post(f"/api/requests/{request_id}/evidence/verify").json()
        assert body["valid"] is False
        assert len(body["problems"]) == 1

    def test_verify_chain_unknown_request(self, client):
        assert client.post("/api/requests/nonexistent/evidence/verify").status_code == 404

    def test_archive_nothing_recent(self, client, db, cfg):
        app.dependency_overrides[get_evidence] = lambda: EvidenceCollector(db, cfg)
        _create_sent(client)
        resp = client.post("/api/evidence/archive")
        assert resp.status_code == 200
        assert resp.json() == {"archived": 0}

    def test_finalize_unknown_packet(self, client):
        resp = client.post("/api/packets/nonexistent/finalize")
        assert resp.status_code == 404


class TestScheduler:
    def test_sweep_escalates_silent_request(self, client):
        request_id = _create_sent(client)
        resp = client.post("/api/scheduler/run", params={"now": "2099-01-01T00:00:00"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["escalated"] == [request_id]
        assert body["escalations_sent"] == [request_id]
        assert client.get(f"/api/requests/{request_id}").json()["status"] == "ESCALATED"

    @pytest.mark.parametrize("path", ["/", "/health"])
    def test_service_endpoints(self, client, path):
        assert client.get(path).status_code == 200

    def test_sweep_accepts_offset_timestamp(self, client):
        request_id = _create_sent(client)
        resp = client.post("/api/scheduler/run", params={"now": "2099-01-01T03:00:00+03:00"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["ran_at"] == "2099-01-01T00:00:00"
        assert body["escalated"] == [request_id]

    def test_stats(self, client):
        request_id = _create_sent(client)
        resp = client.get("/api/scheduler/stats", params={"days": 2})
        assert resp.status_code == 200
        body = resp.json()
        assert body["pending_escalations"] == 0
        assert body["sent_by_kind"] == {"INITIAL": 1}

        client.post("/api/scheduler/run", params={"now": "2099-01-01T00:00:00"})
        body = client.get("/api/scheduler/stats").json()
        assert body["packets_awaiting_delivery"] == 0
        assert client.get(f"/api/requests/{request_id}/status").json()["packet_status"] == "SENT"

    def test_stats_rejects_bad_window(self, client):
        assert client.get("/api/scheduler/stats", params={"days": 0}).status_code == 422


class TestStatus:
    def test_pending_request(self, client):
        request_id = _create(client)["id"]
        resp = client.get(f"/api/requests/{request_id}/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["is_open"] is True
        assert body["next_action"] == "SEND_INITIAL"
        assert body["response_deadline"] is None

    def test_awaiting_request(self, client):
        request_id = _create_sent(client)
        body = client.get(f"/api/requests/{request_id}/status").json()
        assert body["next_action"] == "FOLLOW_UP"
        assert body["follow_ups_remaining"] == 3
        assert body["follow_ups_sent"] == 0
        assert body["days_remaining"] in (29, 30)
        assert body["last_activity"] is not None

    def test_closed_request(self, client):
        request_id = _create_sent(client)
        client.post(f"/api/requests/{request_id}/messages", json={"content": CONFIRMATION})
        body = client.get(f"/api/requests/{request_id}/status").json()
        assert body["is_open"] is False
        assert body["next_action"] is None
        assert body["messages_received"] == 1
        assert body["evidence_records"] == 1
        assert body["decisions"] == 1

    def test_unknown_request(self, client):
        assert client.get("/api/requests/nonexistent/status").status_code == 404

    def test_decision_stats(self, client):
        closed = _create_sent(client)
        client.post(f"/api/requests/{closed}/messages", json={"content": CONFIRMATION})
        escalated = _create_sent(client)
        client.post(f"/api/requests/{escalated}/messages", json={"content": REFUSAL})

        resp = client.get("/api/decisions/stats")
        assert resp.status_code == 200
        body = resp.json()
        assert body["total_decisions"] == 2
        assert body["by_action"] == {"AUTO_CLOSE": 1, "ESCALATE_TO_REGULATOR": 1}
        assert body["escalation_rate"] == 0.5
        assert sum(body["confidence_distribution"].values()) == 2
