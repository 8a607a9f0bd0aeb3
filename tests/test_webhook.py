# pylint: disable=redefined-outer-name
import asyncio
import os

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

os.environ["ENV"] = "test"

from simgate.chat import ChatRef
from simgate.core import make_app
from simgate.router import InboundSms
from tests.mockbank import BANK_ID

QUERY = {"bank": f"{BANK_ID}?x=1", "sender": "17185551234", "receiver": "15135559999"}
BODY = 'Sender: 17185551234\nReceiver: "4.07" 15135559999\nSMSC: +13123149810\n\nHello\n'


@pytest_asyncio.fixture()
async def api(gateway):
    client = TestClient(TestServer(make_app(gateway)))
    await client.start_server()
    yield client
    await client.close()


async def inbound(api, body: str = BODY, **query: str):
    return await api.post("/webhook/sms", params=QUERY | query, data=body)


@pytest.mark.asyncio
async def test_inbound_and_duplicate(api, db) -> None:
    resp = await inbound(api)
    assert resp.status == 200
    assert await resp.json() == {"status": "ok", "conversation_id": 1}
    assert db.conversations[0]["bank_id"] == BANK_ID
    resp = await inbound(api)
    assert (await resp.json())["status"] == "duplicate_skipped"
    assert len(db.messages) == 1


@pytest.mark.asyncio
async def test_inbound_json_body(api, db) -> None:
    resp = await api.post(
        "/webhook/sms",
        params={"bank": BANK_ID},
        json={"sender": "7185551234", "receiver": "5135559999", "content": "json hello"},
    )
    assert resp.status == 200
    assert db.messages[0]["content"] == "json hello"


@pytest.mark.asyncio
async def test_inbound_rejects_bad_input(api, db) -> None:
    resp = await inbound(api, body="Sender: 1\nSMSC: 2\n")
    assert resp.status == 400
    assert (await resp.json())["error"] == "Missing required fields"
    resp = await inbound(api, sender="12")
    assert resp.status == 400
    assert db.messages == []


@pytest.mark.asyncio
async def test_inbound_rejects_unreadable_body(api, db) -> None:
    for json_text in ("[1, 2]", "5"):
        resp = await api.post(
            "/webhook/sms",
            params=QUERY,
            data=json_text,
            headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400
        assert (await resp.json())["error"] == "Body must be text or an object"
    resp = await api.post(
        "/webhook/sms",
        params=QUERY | {"content": "hi"},
        data=b"\xff\xfe\xfa Hello",
        headers={"Content-Type": "text/plain"},
    )
    assert resp.status == 400
    assert (await resp.json())["error"] == "Body is not valid text"
    assert db.messages == []


@pytest.mark.asyncio
async def test_inbound_internal_error(api, gateway) -> None:
    async def explode(*args):
        raise RuntimeError("database on fire")

    gateway.store.find_or_create = explode
    resp = await inbound(api)
    assert resp.status == 500
    assert await resp.json() == {"error": "Internal server error"}


@pytest.mark.asyncio
async def test_health_and_index(api) -> None:
    resp = await api.get("/webhook/health")
    blob = await resp.json()
    assert blob["status"] == "ok" and blob["timestamp"]
    resp = await api.get("/")
    blob = await resp.json()
    assert blob["name"] == "simgate"
    assert "/webhook/sms" in blob["endpoints"]


@pytest.mark.asyncio
async def test_send(api, fake_bank) -> None:
    resp = await api.post(
        "/send", json={"bank": BANK_ID, "slot": "4.07", "to": "(555) 123-4567", "message": "hi"}
    )
    assert resp.status == 200
    blob = await resp.json()
    assert blob["status"] == "sent" and blob["transaction_id"]
    assert blob["progress"][0].startswith("ready")
    assert fake_bank.sends[0]["tasks"][0]["to"] == "15551234567"


@pytest.mark.asyncio
async def test_send_errors(api, fake_bank) -> None:
    resp = await api.post("/send", json={"bank": BANK_ID, "slot": "4.07"})
    assert resp.status == 400
    resp = await api.post("/send", json={"bank": "1", "slot": "4.07", "to": "5551234567", "message": "x"})
    assert resp.status == 404
    fake_bank.send_response = {"code": 200, "status": [{"status": "14"}]}
    resp = await api.post(
        "/send", json={"bank": BANK_ID, "slot": "4.07", "to": "5551234567", "message": "x"}
    )
    assert resp.status == 502
    assert "Unauthorized" in (await resp.json())["error"]
    fake_bank.polls_until_ready = None
    resp = await api.post(
        "/send", json={"bank": BANK_ID, "slot": "5.02", "to": "5551234567", "message": "x"}
    )
    assert resp.status == 504
    assert "No SIM card" in (await resp.json())["error"]


@pytest.mark.asyncio
async def test_reply_flow(api, db, notifier, fake_bank, gateway) -> None:
    await inbound(api)
    thread_ts = db.conversations[0]["thread_ref"]
    resp = await api.post("/conversations/1/reply", json={"message": "hey back", "user": "alice"})
    assert resp.status == 200
    blob = await resp.json()
    assert blob["conversation_id"] == 1
    assert fake_bank.sends[0]["tasks"][0]["to"] == "17185551234"
    outbound = [m for m in db.messages if m["direction"] == "outbound"]
    assert outbound[0]["content"] == "hey back" and outbound[0]["sent_by"] == "alice"
    thread_posts = notifier.in_thread(thread_ts)
    assert any("hey back" in text for text in thread_posts)
    assert gateway.deliveries.pending
    resp = await api.get("/conversations/1/messages")
    blob = await resp.json()
    assert [m["direction"] for m in blob["messages"]] == ["outbound", "inbound"]


@pytest.mark.asyncio
async def test_reply_errors(api) -> None:
    resp = await api.post("/conversations/7/reply", json={"message": "anyone?"})
    assert resp.status == 404
    resp = await api.post("/conversations/abc/reply", json={"message": "anyone?"})
    assert resp.status == 400
    resp = await api.post("/conversations/1/reply", json={})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_reply_in_thread(gateway, db, fake_bank) -> None:
    await gateway.router.route(InboundSms(BANK_ID, "+17185551234", "+15135559999", "hello", "4.07"))
    thread_ts = db.conversations[0]["thread_ref"]
    result = await gateway.reply_in_thread(thread_ts, "from the thread", "bob")
    assert result["conversation_id"] == 1
    assert len(fake_bank.sends) == 1


@pytest.mark.asyncio
async def test_blocklist_endpoints(api) -> None:
    resp = await api.post("/blocked", json={"phone": "718-555-1234", "blocked_by": "alice"})
    assert (await resp.json()) == {"status": "blocked", "phone": "+17185551234"}
    resp = await inbound(api)
    assert (await resp.json())["status"] == "blocked"
    resp = await api.get("/blocked")
    assert [b["phone_number"] for b in (await resp.json())["blocked"]] == ["+17185551234"]
    resp = await api.delete("/blocked/17185551234")
    assert resp.status == 200
    resp = await api.delete("/blocked/17185551234")
    assert resp.status == 404
    resp = await api.post("/blocked", json={"phone": "nope"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_stats_and_bank_status(api) -> None:
    await inbound(api)
    resp = await api.get("/stats")
    blob = await resp.json()
    assert blob["messages_24h"] == 1
    assert blob["conversations"] == 1
    assert blob["blocked"] == 0
    assert blob["active_sims"] == {"ready": 1, "total": 3}
    resp = await api.get("/banks/status")
    [bank] = (await resp.json())["banks"]
    assert bank["online"] and bank["ready"] == 1
    resp = await api.get(f"/banks/{BANK_ID}/slots/4.07")
    blob = await resp.json()
    assert blob["ready"] and blob["iccid"] == "8901260000000000001"
    resp = await api.get("/banks/nope/slots/4.07")
    assert resp.status == 404
    resp = await api.get(f"/banks/{BANK_ID}/slots/9.09")
    assert resp.status == 502


@pytest.mark.asyncio
async def test_activation_watch(api, fake_bank, notifier) -> None:
    resp = await api.post(
        "/activate", json={"phone": "5135550001", "channel": "C-OPS", "thread": "5.000"}
    )
    assert resp.status == 200
    blob = await resp.json()
    assert blob["slot"] == "4.01"
    assert fake_bank.switches == ["4.01"]
    await inbound(api, body="your code is 9911", receiver="15135550001")
    mirrored = notifier.in_thread("5.000")
    assert any("your code is 9911" in text for text in mirrored)
    resp = await api.post("/activate", json={"phone": "5550000000", "thread": "5.000"})
    assert resp.status == 404


@pytest.mark.asyncio
async def test_activation_watch_expires(gateway, notifier) -> None:
    gateway.watches.window = 0.05
    await gateway.activate("+15135550001", ChatRef("C-OPS", "6.000"))
    await asyncio.sleep(0.2)
    assert gateway.watches.get("+15135550001") is None
    assert any("Watch ended" in text for text in notifier.in_thread("6.000"))


@pytest.mark.asyncio
async def test_activation_watch_ends_after_late_lookup(gateway, notifier) -> None:
    now = [0.0]
    gateway.watches.clock = lambda: now[0]
    gateway.watches.window = 0.1
    await gateway.activate("+15135550001", ChatRef("C-OPS", "7.000"))
    now[0] = 1.0
    await gateway.router.route(
        InboundSms(BANK_ID, "+17185551234", "+15135550001", "too late 4242")
    )
    assert gateway.watches.get("+15135550001") is None
    await asyncio.sleep(0.3)
    posted = notifier.in_thread("7.000")
    assert not any("too late" in text for text in posted)
    assert any("Watch ended" in text for text in posted)
    assert gateway.watches.watches == {}


@pytest.mark.asyncio
async def test_end_activation_watch(api, gateway, notifier) -> None:
    gateway.watches.window = 0.1
    resp = await api.post("/activate", json={"phone": "5135550001", "thread": "8.000"})
    assert resp.status == 200
    resp = await api.delete("/activate/5135550001")
    assert resp.status == 200
    assert await resp.json() == {"status": "stopped", "bank_id": BANK_ID, "slot": "4.01"}
    await inbound(api, body="your code is 5150", receiver="15135550001")
    await asyncio.sleep(0.3)
    posted = notifier.in_thread("8.000")
    assert any("Activation done" in text for text in posted)
    assert not any("5150" in text for text in posted)
    assert not any("Watch ended" in text for text in posted)
    resp = await api.delete("/activate/5135550001")
    assert resp.status == 404
    resp = await api.delete("/activate/12")
    assert resp.status == 400


@pytest.mark.asyncio
async def test_diagnostics_guard(api, gateway) -> None:
    gateway.sweep.dwell = 5
    gateway.sweep.ports = 2
    resp = await api.post("/diagnostics/sweep", json={"bank": BANK_ID})
    assert resp.status == 202
    resp = await api.post("/diagnostics/sweep", json={"bank": BANK_ID})
    assert resp.status == 409
    resp = await api.post("/diagnostics/scan")
    assert resp.status == 409
    resp = await api.post("/diagnostics/sweep", json={})
    assert resp.status == 400
    resp = await api.delete("/diagnostics/scan")
    assert (await resp.json())["status"] == "not_running"
    await gateway.sweep.stop()
    resp = await api.post("/diagnostics/sweep", json={"bank": "nope"})
    assert resp.status == 404


@pytest.mark.asyncio
async def test_metrics(api) -> None:
    await inbound(api)
    resp = await api.get("/metrics")
    assert resp.status == 200
    assert "webhook_outcomes" in await resp.text()
