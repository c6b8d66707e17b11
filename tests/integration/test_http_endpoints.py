"""Tests for the out-of-band HTTP endpoints and pull/stream transports."""

import json

from unsend.dispatcher import Dispatcher
from unsend.rooms import RoomRegistry
from unsend.routers.files import content_disposition
from unsend.routers.transport import event_stream, format_sse

from tests.helpers import ALICE, BOB, CAROL, as_


def upload(client, identity=ALICE, content=b"data", name="f.bin", **form):
    data = {"room": "alpha"}
    data.update({k: str(v) for k, v in form.items()})
    return client.post(
        "/api/upload",
        files=[("files", (name, content, "application/octet-stream"))],
        data=data,
        headers=as_(identity),
    )


class TestBasics:
    def test_index_and_health(self, client):
        assert "unsend" in client.get("/").text
        body = client.get("/health").json()
        assert body["ok"] is True and body["items"] == 0


class TestUpload:
    def test_upload_without_session_still_owned_by_address(self, client):
        resp = upload(client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True and body["room"] == "alpha"
        [item] = body["items"]
        assert item["from"] == ALICE
        assert client.get(f"/api/resolve/{item['id']}", headers=as_(ALICE)).json()["access"] == "public"

    def test_multiple_files(self, client):
        resp = client.post(
            "/api/upload",
            files=[("files", ("a.txt", b"a", "text/plain")), ("files", ("b.txt", b"b", "text/plain"))],
            data={"room": "alpha"},
            headers=as_(ALICE),
        )
        assert [i["name"] for i in resp.json()["items"]] == ["a.txt", "b.txt"]

    def test_too_large(self, client, settings):
        resp = upload(client, content=b"x" * (settings.max_upload_bytes + 1))
        assert resp.status_code == 413
        assert resp.json()["error"] == "invalid_input"

    def test_missing_files_is_invalid_input(self, client):
        resp = client.post("/api/upload", data={"room": "alpha"}, headers=as_(ALICE))
        assert resp.status_code == 400
        assert resp.json() == {"ok": False, "error": "invalid_input", "message": resp.json()["message"]}

    def test_bad_ttl_is_invalid_input(self, client):
        resp = upload(client, ttlSeconds="soon")
        assert resp.status_code == 400

    def test_negative_ttl_clamped(self, client):
        resp = upload(client, ttlSeconds=-10)
        assert resp.status_code == 200
        assert resp.json()["items"][0]["expiresAt"] is None


class TestResolveAndRetrieve:
    def test_unknown_id(self, client):
        resp = client.get("/api/resolve/nope", headers=as_(BOB))
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"
        assert client.get("/files/nope/public").status_code == 404

    def test_view_only_first_viewer_binds(self, client):
        item = upload(client, viewOnly="true").json()["items"][0]
        assert item["viewOnly"] is True and item["url"] is None

        ref = client.get(f"/api/resolve/{item['id']}", headers=as_(BOB)).json()
        assert ref["access"] == "peer"
        resp = client.get(ref["url"], headers=as_(BOB))
        assert resp.status_code == 200
        assert resp.headers["content-disposition"].startswith("inline")

        assert client.get(f"/api/resolve/{item['id']}", headers=as_(CAROL)).status_code == 403
        assert client.get(ref["url"], headers=as_(CAROL)).status_code == 403
        assert client.get(f"/files/{item['id']}/public", headers=as_(BOB)).status_code == 403

    def test_public_download_is_attachment(self, client):
        item = upload(client, name="report.pdf").json()["items"][0]
        resp = client.get(item["url"], headers=as_(BOB))
        assert resp.headers["content-disposition"].startswith("attachment")

    def test_owner_endpoint(self, client):
        item = upload(client, password="pw").json()["items"][0]
        assert client.get(f"/files/{item['id']}/owner", headers=as_(ALICE)).content == b"data"
        assert client.get(f"/files/{item['id']}/owner", headers=as_(BOB)).status_code == 403

    def test_file_gone_from_disk_is_not_found(self, client):
        item = upload(client).json()["items"][0]
        client.app.state.relay.artifacts.get(item["id"]).public_path.unlink()
        resp = client.get(item["url"], headers=as_(BOB))
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_download_headers(self, client):
        item = upload(client, name="report.pdf", content=b"12345").json()["items"][0]
        resp = client.get(item["url"], headers=as_(BOB))
        assert resp.content == b"12345"
        assert resp.headers["content-length"] == "5"
        assert resp.headers["cache-control"] == "no-store"
        assert resp.headers["content-disposition"] == 'attachment; filename="report.pdf"'

    def test_non_ascii_name_is_percent_encoded(self):
        assert content_disposition("inline", "résumé.pdf") == "inline; filename*=utf-8''r%C3%A9sum%C3%A9.pdf"


class TestUnlockEndpoint:
    def test_owner_cannot_unlock(self, client):
        item = upload(client, password="pw").json()["items"][0]
        resp = client.post("/api/unlock", json={"id": item["id"], "password": "pw"}, headers=as_(ALICE))
        assert resp.status_code == 403
        assert "recalled" not in resp.json()

    def test_unlock_unprotected(self, client):
        item = upload(client).json()["items"][0]
        resp = client.post("/api/unlock", json={"id": item["id"], "password": "pw"}, headers=as_(BOB))
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_input"

    def test_unlock_missing_fields(self, client):
        assert client.post("/api/unlock", json={"id": "x"}, headers=as_(BOB)).status_code == 400


class TestRecallEndpoint:
    def test_owner_recalls_over_http(self, client):
        item = upload(client).json()["items"][0]
        resp = client.post("/api/recall", json={"id": item["id"]}, headers=as_(ALICE))
        body = resp.json()
        assert body["ok"] is True and body["changed"] is True
        assert body["ownerUrl"] == f"/files/{item['id']}/owner"
        assert client.get(item["url"], headers=as_(BOB)).status_code == 403

        again = client.post("/api/recall", json={"id": item["id"]}, headers=as_(ALICE)).json()
        assert again["changed"] is False

    def test_peer_cannot_recall(self, client):
        item = upload(client).json()["items"][0]
        resp = client.post("/api/recall", json={"id": item["id"]}, headers=as_(BOB))
        assert resp.status_code == 403
        assert client.get(item["url"], headers=as_(BOB)).status_code == 200


class TestPoll:
    def test_poll_sees_events_in_order(self, client):
        first = upload(client).json()["items"][0]
        client.post("/api/recall", json={"id": first["id"]}, headers=as_(ALICE))

        body = client.get("/api/poll", params={"room": "alpha", "since": 0}, headers=as_(BOB)).json()
        assert [e["kind"] for e in body["events"]] == ["file", "recalled"]
        assert [e["seq"] for e in body["events"]] == [1, 2]
        assert body["next"] == 3

        owner_view = client.get("/api/poll", params={"room": "alpha", "since": 1}, headers=as_(ALICE)).json()
        assert [e["kind"] for e in owner_view["events"]] == ["recall_confirmed"]

        empty = client.get("/api/poll", params={"room": "alpha", "since": 3}, headers=as_(BOB)).json()
        assert empty["events"] == [] and empty["next"] == 3

    def test_poll_unknown_room(self, client):
        body = client.get("/api/poll", params={"room": "ghost"}).json()
        assert body == {"ok": True, "room": "ghost", "events": [], "next": 0}


class FakeRequest:
    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self) -> bool:
        return self.disconnected


class TestStream:
    def test_format_sse(self):
        frame = format_sse({"kind": "chat", "seq": 7})
        assert frame.startswith("id: 7\n")
        assert json.loads(frame.split("data: ", 1)[1]) == {"kind": "chat", "seq": 7}
        assert frame.endswith("\n\n")

    async def test_stream_yields_events_then_stops_on_disconnect(self):
        dispatcher = Dispatcher(RoomRegistry())
        sub = dispatcher.subscribe("alpha", BOB)
        request = FakeRequest()
        gen = event_stream(request, dispatcher, sub, keepalive=0.01)

        assert await gen.__anext__() == "retry: 3000\n\n"
        dispatcher.publish("alpha", {"kind": "chat", "text": "hi"})
        frame = await gen.__anext__()
        assert '"text": "hi"' in frame

        assert await gen.__anext__() == ": keepalive\n\n"
        request.disconnected = True
        with_stop = []
        async for chunk in gen:
            with_stop.append(chunk)
        assert with_stop == []
        # Unsubscribed, and with nobody left the room buffer is released.
        assert not dispatcher.is_buffered("alpha")
        assert dispatcher.current_seq("alpha") == 1

    async def test_dropped_subscriber_ends_stream(self):
        dispatcher = Dispatcher(RoomRegistry(), stream_queue_size=1)
        sub = dispatcher.subscribe("alpha", BOB)
        gen = event_stream(FakeRequest(), dispatcher, sub, keepalive=1.0)
        await gen.__anext__()
        dispatcher.publish("alpha", {"kind": "chat"})
        dispatcher.publish("alpha", {"kind": "chat"})
        chunks = [c async for c in gen]
        assert chunks == []
        assert sub.dropped is True
