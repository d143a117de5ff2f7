"""
test_routers_quotations.py — HTTP tests for routers/quotations.py and main.py

Covers: create/list/get, event dispatch and rejections (400/404/409/422),
send/analyze/confirm/deliver endpoints, cancel/retry/reset, stuck list,
manual poll, health.
"""

from quoteflow.exceptions import SyncError
from tests.conftest import make_items

SUPPLIER = {"id": "sup-1", "name": "Acme", "email": " sales@acme.com "}


def _create(client, items=None):
    resp = client.post("/api/quotations", json={
        "supplier": SUPPLIER,
        "items": make_items() if items is None else items,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()["quotation"]


def _quoted(client):
    q = _create(client)
    assert client.post(f"/api/quotations/{q['id']}/send").json()["valid"]
    reply = client.post(f"/api/quotations/{q['id']}/events", json={
        "type": "receive_reply",
        "payload": {"email_body": "Widget 1 at 10.00", "from": "sales@acme.com"},
    })
    assert reply.status_code == 200, reply.text
    assert client.post(f"/api/quotations/{q['id']}/analyze").json()["valid"]
    return q["id"]


def test_create_quotation(client):
    q = _create(client)
    assert q["state"] == "draft"
    assert q["status_label"] == "Draft"
    assert q["supplier_email"] == "sales@acme.com"
    assert q["id"].startswith("quot_")
    assert len(q["history"]) == 1


def test_create_missing_item_fields_422(client):
    resp = client.post("/api/quotations", json={"supplier": SUPPLIER, "items": [{"name": "x"}]})
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] == "Request validation failed"
    assert body["status_code"] == 422


def test_list_and_filter(client):
    first = _create(client)
    _create(client)
    client.post(f"/api/quotations/{first['id']}/cancel", json={"reason": "dup"})

    assert len(client.get("/api/quotations").json()) == 2
    cancelled = client.get("/api/quotations", params={"state": "cancelled"}).json()
    assert [q["id"] for q in cancelled] == [first["id"]]
    assert cancelled[0]["cancellation_reason"] == "dup"


def test_get_unknown_404(client):
    resp = client.get("/api/quotations/quot_missing")
    assert resp.status_code == 404
    assert "not found" in resp.json()["error"]


def test_available_events_and_history(client):
    q = _create(client)
    assert client.get(f"/api/quotations/{q['id']}/events").json() == {"events": ["SEND", "CANCEL"]}
    history = client.get(f"/api/quotations/{q['id']}/history").json()
    assert [h["event"] for h in history] == ["CREATE_DRAFT"]


def test_event_not_valid_in_state_400(client):
    q = _create(client)
    resp = client.post(f"/api/quotations/{q['id']}/events", json={"type": "CONFIRM"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Event 'CONFIRM' is not valid in state 'draft'"


def test_unknown_event_400(client):
    q = _create(client)
    resp = client.post(f"/api/quotations/{q['id']}/events", json={"type": "TELEPORT"})
    assert resp.status_code == 400
    assert "Unknown event" in resp.json()["error"]


def test_mistyped_payload_rejected_and_list_still_loads(client, workflow):
    q = _create(client)
    resp = client.post(f"/api/quotations/{q['id']}/events", json={
        "type": "CANCEL",
        "payload": {"reason": {"x": 1}},
    })
    assert resp.status_code == 400
    assert "Invalid payload for CANCEL" in resp.json()["error"]

    workflow.store.remove(q["id"])
    fetched = client.get(f"/api/quotations/{q['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["state"] == "draft"
    assert [x["id"] for x in client.get("/api/quotations").json()] == [q["id"]]


def test_in_flight_409(client, workflow):
    q = _create(client)
    workflow.coordinator._entities[q["id"]] = "op-1"
    resp = client.post(f"/api/quotations/{q['id']}/cancel")
    assert resp.status_code == 409


def test_send_guard_failure_400(client):
    q = _create(client, items=[])
    resp = client.post(f"/api/quotations/{q['id']}/send")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Supplier email and items are required"


def test_send_failure_returns_error_state(client, mailer):
    q = _create(client)
    mailer.send.side_effect = SyncError("INVALID_ARGUMENT", "Recipient rejected", 400)
    resp = client.post(f"/api/quotations/{q['id']}/send")
    assert resp.status_code == 200
    body = resp.json()
    assert body["valid"] is False
    assert body["quotation"]["state"] == "error"
    assert body["quotation"]["error"]["code"] == "INVALID_ARGUMENT"

    retried = client.post(f"/api/quotations/{q['id']}/retry").json()
    assert retried["quotation"]["state"] == "draft"


def test_full_happy_path(client):
    qid = _quoted(client)
    quotation = client.get(f"/api/quotations/{qid}").json()
    assert quotation["state"] == "quoted"
    assert quotation["quoted_total"] == 150.5

    confirmed = client.post(f"/api/quotations/{qid}/confirm").json()
    assert confirmed["quotation"]["state"] == "confirmed"

    delivered = client.post(f"/api/quotations/{qid}/deliver", json={"invoice_number": "INV-1"}).json()
    assert delivered["valid"] is True
    assert delivered["quotation"]["state"] == "delivered"
    assert delivered["quotation"]["invoice_number"] == "INV-1"


def test_cancel_then_reset(client):
    q = _create(client)
    cancelled = client.post(f"/api/quotations/{q['id']}/cancel", json={"cancelled_by": "ana"}).json()
    assert cancelled["quotation"]["state"] == "cancelled"
    reset = client.post(f"/api/quotations/{q['id']}/reset").json()
    assert reset["quotation"]["state"] == "draft"
    assert reset["quotation"]["cancelled_at"] is None


def test_stuck_route_not_shadowed_by_id(client):
    assert client.get("/api/quotations/stuck").json() == []


def test_poll_skips_when_mailbox_disconnected(client):
    body = client.post("/api/replies/poll").json()
    assert body["skipped_cycle"] is True
    assert body["checked"] == 0


def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["mailbox_connected"] is False
    assert body["poller_running"] is False
    assert body["pending_operations"] == 0
