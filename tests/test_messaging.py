from datetime import datetime

import pytest
from bson import ObjectId
from pymongo.errors import OperationFailure

import enrollment
import messaging


def _send(client, sender, recipient, content, sid):
    res = client.post("/messages", headers=sender["headers"],
                      json={"recipient_id": recipient["id"], "content": content, "semester_id": sid})
    assert res.status_code == 201, res.text
    return res.json()["data"]


def _conversations(client, who, sid):
    res = client.get(f"/messages/conversations/{sid}", headers=who["headers"])
    assert res.status_code == 200, res.text
    return {c["user"]["id"]: c for c in res.json()["conversations"]}


def test_message_reaches_student_conversation_list_and_read_clears_unread(client, school):
    sid, teacher, student = school["semester_id"], school["teacher"], school["student"]
    sent = _send(client, teacher, student, "hi", sid)
    assert sent["sender"]["name"] == "Ms Tan"
    assert sent["recipient"]["name"] == "Sam"

    convs = _conversations(client, student, sid)
    assert list(convs) == [teacher["id"]]
    assert convs[teacher["id"]]["last_message"]["content"] == "hi"
    assert convs[teacher["id"]]["unread_count"] == 1

    res = client.put(f"/messages/read-conversation/{teacher['id']}/{sid}", headers=student["headers"])
    assert res.status_code == 200
    assert _conversations(client, student, sid)[teacher["id"]]["unread_count"] == 0


def test_mark_conversation_read_is_idempotent(client, school):
    sid, teacher, student = school["semester_id"], school["teacher"], school["student"]
    _send(client, teacher, student, "one", sid)
    _send(client, teacher, student, "two", sid)

    first = client.put(f"/messages/read-conversation/{teacher['id']}/{sid}", headers=student["headers"])
    assert first.json()["updated"] == 2
    after_once = _conversations(client, student, sid)[teacher["id"]]["unread_count"]
    second = client.put(f"/messages/read-conversation/{teacher['id']}/{sid}", headers=student["headers"])
    assert second.json()["updated"] == 0
    assert _conversations(client, student, sid)[teacher["id"]]["unread_count"] == after_once == 0


def test_conversation_list_orders_by_latest_message_and_keeps_silent_counterparts(client, school):
    sid, teacher = school["semester_id"], school["teacher"]
    _send(client, school["student"], teacher, "question", sid)
    _send(client, teacher, school["parent"], "update for parents", sid)

    res = client.get(f"/messages/conversations/{sid}", headers=teacher["headers"])
    convs = res.json()["conversations"]
    assert [c["user"]["name"] for c in convs] == ["Pat", "Sam"]
    assert convs[0]["last_message"]["content"] == "update for parents"
    assert convs[0]["unread_count"] == 0
    assert convs[1]["unread_count"] == 1

    # the teacher's second class has not been messaged yet but still shows up
    convs = _conversations(client, school["teacher2"], sid)
    assert set(convs) == {school["student2"]["id"], school["parent2"]["id"]}
    for c in convs.values():
        assert c["last_message"]["content"] == messaging.PLACEHOLDER_TEXT
        assert c["unread_count"] == 0


def test_conversation_list_ignores_messages_from_outside_visibility(client, school):
    sid = school["semester_id"]
    _send(client, school["student2"], school["teacher"], "wrong teacher", sid)
    convs = _conversations(client, school["teacher"], sid)
    assert school["student2"]["id"] not in convs


def test_sending_outside_counterparts_is_allowed(client, school):
    sid = school["semester_id"]
    assert messaging.ENFORCE_SEND_VISIBILITY is False
    res = client.post("/messages", headers=school["student2"]["headers"],
                      json={"recipient_id": school["teacher"]["id"], "content": "hello", "semester_id": sid})
    assert res.status_code == 201


def test_send_failures(client, school):
    sid, teacher = school["semester_id"], school["teacher"]
    res = client.post("/messages", headers=teacher["headers"],
                      json={"recipient_id": str(ObjectId()), "content": "hi", "semester_id": sid})
    assert res.status_code == 404
    res = client.post("/messages", headers=teacher["headers"],
                      json={"recipient_id": school["student"]["id"], "content": "hi",
                            "semester_id": str(ObjectId())})
    assert res.status_code == 404
    res = client.post("/messages", headers=teacher["headers"],
                      json={"recipient_id": school["student"]["id"], "content": "   ", "semester_id": sid})
    assert res.status_code == 400


def test_conversation_thread_is_chronological(client, school):
    sid, teacher, student = school["semester_id"], school["teacher"], school["student"]
    for text, sender, recipient in [("a", teacher, student), ("b", student, teacher), ("c", teacher, student)]:
        _send(client, sender, recipient, text, sid)
    res = client.get(f"/messages/conversation/{student['id']}/{sid}", headers=teacher["headers"])
    assert [m["content"] for m in res.json()["messages"]] == ["a", "b", "c"]


def test_conversations_require_enrollment(client, school, register):
    outsider = register("teacher")
    res = client.get(f"/messages/conversations/{school['semester_id']}", headers=outsider["headers"])
    assert res.status_code == 403


def test_single_message_read_only_by_recipient(client, school):
    sid, teacher, student = school["semester_id"], school["teacher"], school["student"]
    msg = _send(client, teacher, student, "hi", sid)
    assert client.put(f"/messages/{msg['id']}/read", headers=teacher["headers"]).status_code == 403
    assert client.put(f"/messages/{msg['id']}/read", headers=student["headers"]).status_code == 200
    assert client.put(f"/messages/{ObjectId()}/read", headers=student["headers"]).status_code == 404
    res = client.put("/messages/not-an-id/read", headers=student["headers"])
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "message_id"

    res = client.get(f"/messages/unread-count?semester_id={sid}", headers=student["headers"])
    assert res.json()["unread_count"] == 0


def test_unread_count(client, school):
    sid, teacher, student = school["semester_id"], school["teacher"], school["student"]
    _send(client, teacher, student, "one", sid)
    _send(client, teacher, student, "two", sid)
    assert client.get("/messages/unread-count", headers=student["headers"]).json()["unread_count"] == 2
    assert client.get("/messages/unread-count", headers=teacher["headers"]).json()["unread_count"] == 0


def test_group_conversations_picks_latest_and_counts_unread():
    t1, t2 = datetime(2025, 9, 1, 8), datetime(2025, 9, 1, 9)
    msgs = [
        {"_id": ObjectId(), "sender_id": "me", "recipient_id": "a", "created_at": t2, "is_read": False},
        {"_id": ObjectId(), "sender_id": "a", "recipient_id": "me", "created_at": t1, "is_read": False},
        {"_id": ObjectId(), "sender_id": "b", "recipient_id": "me", "created_at": t1, "is_read": True},
    ]
    groups = messaging.group_conversations(msgs, "me")
    assert groups["a"]["last_message"] is msgs[0]
    assert groups["a"]["unread_count"] == 1
    assert groups["b"]["unread_count"] == 0


class _BrokenMessages:
    def find(self, *args, **kwargs):
        raise OperationFailure("aggregation unavailable")


class _DatabaseWithoutMessages:
    def __init__(self, real):
        self._real = real

    def __getitem__(self, name):
        if name == messaging.MESSAGES:
            return _BrokenMessages()
        return self._real[name]


def test_conversations_degrade_to_counterparts_when_lookup_fails(client, mongo, school):
    sid = school["semester_id"]
    _send(client, school["teacher"], school["student"], "hi", sid)
    semester = enrollment.load_semester(mongo, sid)

    convs = messaging.conversations(_DatabaseWithoutMessages(mongo), semester, school["student"]["id"])
    assert [c["user"]["id"] for c in convs] == [school["teacher"]["id"]]
    assert convs[0]["last_message"]["content"] == messaging.PLACEHOLDER_TEXT
    assert convs[0]["unread_count"] == 0


@pytest.mark.parametrize("enforce, status", [(False, 201), (True, 403)])
def test_send_visibility_policy_switch(client, school, monkeypatch, enforce, status):
    monkeypatch.setattr(messaging, "ENFORCE_SEND_VISIBILITY", enforce)
    res = client.post("/messages", headers=school["student2"]["headers"],
                      json={"recipient_id": school["teacher"]["id"], "content": "hi",
                            "semester_id": school["semester_id"]})
    assert res.status_code == status
