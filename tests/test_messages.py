"""
Tests for the REST message endpoints.

Tests cover:
- POST /messages success, validation (400) and unknown receiver (404)
- Server-assigned, strictly increasing ids
- GET /messages/{peer_id} history ordering and contact side effect
- GET /messages/check-new polling feed
- Authentication on every route
- Store failures: opaque 500, and sends that outlive a failed contact write
"""

import pytest
from sqlalchemy.exc import OperationalError

from messenger.errors import StoreError
from messenger.models import Contact, Message
from messenger.storage import append_message, insert_contact, store_errors


def send(client, headers, receiver_id, content):
    return client.post("/messages", json={"receiverId": receiver_id, "content": content}, headers=headers)


class TestSendMessage:

    def test_send_success(self, client, users, headers_for):
        response = send(client, headers_for(users["alice"]), users["bob"], "hi")

        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "Message sent successfully"
        data = body["messageData"]
        assert data["content"] == "hi"
        assert data["isOutgoing"] is True
        assert isinstance(data["id"], int)
        assert data["timestamp"].endswith("Z")

    def test_exactly_one_row_per_send_with_increasing_ids(self, client, db, users, headers_for):
        ids = [
            send(client, headers_for(users["alice"]), users["bob"], f"m{i}").json()["messageData"]["id"]
            for i in range(3)
        ]

        assert ids == sorted(ids)
        assert len(set(ids)) == 3
        assert db.query(Message).count() == 3

    def test_empty_content_rejected_without_side_effects(self, client, db, users, headers_for):
        response = send(client, headers_for(users["alice"]), users["bob"], "")

        assert response.status_code == 400
        assert db.query(Message).count() == 0
        assert db.query(Contact).count() == 0

    def test_blank_content_rejected(self, client, db, users, headers_for):
        response = send(client, headers_for(users["alice"]), users["bob"], "   ")
        assert response.status_code == 400
        assert db.query(Message).count() == 0

    def test_missing_receiver_rejected(self, client, users, headers_for):
        response = client.post("/messages", json={"content": "hi"}, headers=headers_for(users["alice"]))
        assert response.status_code == 400

    def test_malformed_receiver_rejected(self, client, users, headers_for):
        response = send(client, headers_for(users["alice"]), "not-a-number", "hi")
        assert response.status_code == 400

    def test_unknown_receiver_not_found(self, client, db, users, headers_for):
        response = send(client, headers_for(users["alice"]), 999, "hi")

        assert response.status_code == 404
        assert response.json() == {"detail": "Receiver not found"}
        assert db.query(Message).count() == 0

    def test_send_creates_receiver_contact(self, client, db, users, headers_for):
        send(client, headers_for(users["alice"]), users["bob"], "hi")

        contact = db.query(Contact).filter_by(owner_id=users["bob"], peer_id=users["alice"]).one()
        assert contact.nickname == "+33600000001"

    def test_send_fans_out_to_receiver_socket(self, client, users, headers_for):
        from messenger.tokens import issue_token

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "authenticate", "token": issue_token(users["bob"])})
            assert ws.receive_json()["type"] == "authenticated"

            sent = send(client, headers_for(users["alice"]), users["bob"], "over rest").json()

            event = ws.receive_json()
            assert event["type"] == "new_message"
            assert event["message"]["id"] == sent["messageData"]["id"]
            assert event["message"]["senderId"] == users["alice"]
            assert event["message"]["isOutgoing"] is False
            assert "tempId" not in event


class TestAuth:

    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/conversations"),
            ("get", "/messages/1"),
            ("get", "/messages/check-new"),
            ("post", "/messages"),
        ],
    )
    def test_routes_require_token(self, client, method, path):
        response = getattr(client, method)(path)
        assert response.status_code == 401

    def test_bad_token_rejected(self, client):
        response = client.get("/conversations", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_authenticated_call_updates_last_seen(self, client, db, users, headers_for):
        from messenger.models import User

        client.get("/conversations", headers=headers_for(users["alice"]))

        db.expire_all()
        assert db.get(User, users["alice"]).last_seen is not None


class TestHistory:

    def test_offline_receiver_reads_history_later(self, client, db, users, headers_for):
        """alice sends while bob is offline; bob finds it in history and gains a contact."""
        sent = send(client, headers_for(users["alice"]), users["bob"], "hi").json()["messageData"]
        db.query(Contact).delete()
        db.commit()

        response = client.get(f"/messages/{users['alice']}", headers=headers_for(users["bob"]))

        assert response.status_code == 200
        messages = response.json()["messages"]
        assert messages == [
            {"id": sent["id"], "content": "hi", "timestamp": sent["timestamp"], "isOutgoing": False}
        ]
        db.expire_all()
        contact = db.query(Contact).filter_by(owner_id=users["bob"], peer_id=users["alice"]).one()
        assert contact.nickname == "+33600000001"

    def test_history_is_ascending_and_scoped_to_pair(self, client, db, users, headers_for):
        append_message(db, users["alice"], users["bob"], "one")
        append_message(db, users["bob"], users["alice"], "two")
        append_message(db, users["alice"], users["carol"], "elsewhere")
        append_message(db, users["alice"], users["bob"], "three")

        messages = client.get(
            f"/messages/{users['bob']}", headers=headers_for(users["alice"])
        ).json()["messages"]

        assert [m["content"] for m in messages] == ["one", "two", "three"]
        assert [m["isOutgoing"] for m in messages] == [True, False, True]
        timestamps = [m["timestamp"] for m in messages]
        assert timestamps == sorted(timestamps)

    def test_history_keeps_existing_nickname(self, client, db, users, headers_for):
        insert_contact(db, users["bob"], users["alice"], "Mum")

        client.get(f"/messages/{users['alice']}", headers=headers_for(users["bob"]))

        db.expire_all()
        contact = db.query(Contact).filter_by(owner_id=users["bob"], peer_id=users["alice"]).one()
        assert contact.nickname == "Mum"

    def test_history_with_unknown_peer(self, client, users, headers_for):
        response = client.get("/messages/999", headers=headers_for(users["alice"]))
        assert response.status_code == 404


class TestCheckNew:

    def test_returns_inbound_only_in_order(self, client, db, users, headers_for):
        first = append_message(db, users["alice"], users["bob"], "a1")
        append_message(db, users["bob"], users["alice"], "outbound")
        second = append_message(db, users["carol"], users["bob"], "c1")

        messages = client.get("/messages/check-new", headers=headers_for(users["bob"])).json()["messages"]

        assert [m["id"] for m in messages] == [first.id, second.id]
        assert messages[0]["senderId"] == users["alice"]
        assert messages[0]["senderName"] == "alice"
        assert messages[0]["senderPhone"] == "+33600000001"
        assert messages[1]["senderPhone"] is None

    def test_since_last_message_id(self, client, db, users, headers_for):
        first = append_message(db, users["alice"], users["bob"], "old")
        newer = append_message(db, users["alice"], users["bob"], "new")

        messages = client.get(
            "/messages/check-new",
            params={"lastMessageId": first.id},
            headers=headers_for(users["bob"]),
        ).json()["messages"]

        assert [m["id"] for m in messages] == [newer.id]

    def test_creates_contacts_for_every_sender(self, client, db, users, headers_for):
        append_message(db, users["alice"], users["bob"], "a")
        append_message(db, users["carol"], users["bob"], "c")

        client.get("/messages/check-new", headers=headers_for(users["bob"]))

        db.expire_all()
        nicknames = {
            c.peer_id: c.nickname for c in db.query(Contact).filter_by(owner_id=users["bob"]).all()
        }
        assert nicknames == {users["alice"]: "+33600000001", users["carol"]: "carol"}

    def test_nothing_new(self, client, users, headers_for):
        response = client.get("/messages/check-new", headers=headers_for(users["bob"]))
        assert response.status_code == 200
        assert response.json() == {"messages": []}


class TestHealthAndMetrics:

    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics_count_sends(self, client, users, headers_for):
        send(client, headers_for(users["alice"]), users["bob"], "hi")

        body = client.get("/metrics").text

        assert 'messages_sent_total{channel="rest",result="sent"}' in body

    def test_request_id_header(self, client):
        assert "x-request-id" in client.get("/health/live").headers


def failing_append(db, *args, **kwargs):
    with store_errors(db, "append message"):
        raise OperationalError("INSERT INTO messages", {}, Exception("disk I/O error"))


def failing_insert_contact(*args, **kwargs):
    raise StoreError()


class TestStoreFailures:

    def test_store_failure_is_opaque_500(self, client, db, users, headers_for, monkeypatch):
        monkeypatch.setattr("messenger.delivery.append_message", failing_append)

        response = send(client, headers_for(users["alice"]), users["bob"], "hi")

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal server error"}
        assert db.query(Message).count() == 0
        assert db.query(Contact).count() == 0

    def test_send_succeeds_when_contact_creation_fails(self, client, db, users, headers_for, monkeypatch):
        monkeypatch.setattr("messenger.contacts.insert_contact", failing_insert_contact)

        response = send(client, headers_for(users["alice"]), users["bob"], "hi")

        assert response.status_code == 201
        assert db.query(Message).count() == 1
        assert db.query(Contact).count() == 0
