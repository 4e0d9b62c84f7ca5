"""
Direct messages and the per-semester conversation list.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import collection_name, create_document, obj_id, serialize_doc, utcnow
from enrollment import USERS, counterparts, load_semester, users_by_ids
from errors import Forbidden, NotFoundError, RecipientNotFound, ValidationError
from schemas import Attachment, Message

logger = logging.getLogger(__name__)

MESSAGES = collection_name(Message)
PLACEHOLDER_TEXT = "No messages yet"

# Sending does not check the recipient against the sender's counterparts:
# a first contact outside class scope is allowed. Flip to restrict sends.
ENFORCE_SEND_VISIBILITY = False


def _message_view(msg: Dict[str, Any]) -> Dict[str, Any]:
    return serialize_doc({
        "_id": msg["_id"],
        "sender_id": msg["sender_id"],
        "recipient_id": msg["recipient_id"],
        "content": msg["content"],
        "message_type": msg.get("message_type", "text"),
        "is_read": msg.get("is_read", False),
        "created_at": msg.get("created_at"),
    })


def _with_people(database: Database, msg: Dict[str, Any]) -> Dict[str, Any]:
    people = {str(u["_id"]): serialize_doc(u) for u in users_by_ids(database, {msg["sender_id"], msg["recipient_id"]})}
    data = serialize_doc(msg)
    data["sender"] = people.get(msg["sender_id"])
    data["recipient"] = people.get(msg["recipient_id"])
    return data


def send_message(database: Database, sender: Dict[str, Any], recipient_id: str, content: str, semester_id: str,
                 message_type: str = "text", attachments: Optional[List[Attachment]] = None) -> Dict[str, Any]:
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content cannot be empty",
                              errors=[{"field": "content", "message": "Message content cannot be empty"}])
    if not ObjectId.is_valid(recipient_id) or not database[USERS].find_one({"_id": ObjectId(recipient_id)}, {"_id": 1}):
        raise RecipientNotFound()
    semester = load_semester(database, semester_id)
    sender_id = str(sender["_id"])
    if ENFORCE_SEND_VISIBILITY and recipient_id not in counterparts(semester, sender_id):
        raise Forbidden("You cannot message this user")
    msg = Message(
        sender_id=sender_id,
        recipient_id=recipient_id,
        content=content,
        message_type=message_type,
        attachments=attachments or [],
        semester_id=str(semester["_id"]),
    )
    mid = create_document(database, MESSAGES, msg)
    logger.info("Message %s sent %s -> %s", mid, sender_id, recipient_id)
    return _with_people(database, database[MESSAGES].find_one({"_id": ObjectId(mid)}))


def get_conversation(database: Database, caller_id: str, other_id: str, semester_id: str) -> List[Dict[str, Any]]:
    semester = load_semester(database, semester_id)
    docs = database[MESSAGES].find({
        "semester_id": str(semester["_id"]),
        "$or": [
            {"sender_id": caller_id, "recipient_id": other_id},
            {"sender_id": other_id, "recipient_id": caller_id},
        ],
    }).sort([("created_at", 1), ("_id", 1)])
    return [serialize_doc(d) for d in docs]


def group_conversations(messages: Iterable[Dict[str, Any]], caller_id: str) -> Dict[str, Dict[str, Any]]:
    """Group messages by the party that is not `caller_id`.

    Each group keeps its newest message (ties broken by id) and the number of
    unread messages addressed to the caller.
    """
    groups: Dict[str, Dict[str, Any]] = {}
    for m in messages:
        other = m["recipient_id"] if m["sender_id"] == caller_id else m["sender_id"]
        entry = groups.setdefault(other, {"last_message": m, "unread_count": 0})
        if (m["created_at"], m["_id"]) > (entry["last_message"]["created_at"], entry["last_message"]["_id"]):
            entry["last_message"] = m
        if m["recipient_id"] == caller_id and not m.get("is_read", False):
            entry["unread_count"] += 1
    return groups


def conversations(database: Database, semester: Dict[str, Any], caller_id: str) -> List[Dict[str, Any]]:
    """Conversation list for the caller: one entry per counterpart, including ones never messaged."""
    ids = counterparts(semester, caller_id)
    if not ids:
        return []
    people = users_by_ids(database, ids)
    try:
        docs = database[MESSAGES].find({
            "semester_id": str(semester["_id"]),
            "$or": [
                {"sender_id": caller_id, "recipient_id": {"$in": list(ids)}},
                {"recipient_id": caller_id, "sender_id": {"$in": list(ids)}},
            ],
        })
        groups = group_conversations(docs, caller_id)
    except PyMongoError as e:
        logger.warning("Conversation lookup failed for %s, listing counterparts only: %s", caller_id, e)
        groups = {}

    with_messages, without = [], []
    for user in people:
        uid = str(user["_id"])
        group = groups.get(uid)
        entry = {"user": serialize_doc(user)}
        if group:
            entry["last_message"] = _message_view(group["last_message"])
            entry["unread_count"] = group["unread_count"]
            entry["_sort"] = (group["last_message"]["created_at"], group["last_message"]["_id"])
            with_messages.append(entry)
        else:
            entry["last_message"] = {"content": PLACEHOLDER_TEXT, "created_at": None}
            entry["unread_count"] = 0
            without.append(entry)
    with_messages.sort(key=lambda e: e.pop("_sort"), reverse=True)
    without.sort(key=lambda e: (e["user"].get("name") or "").lower())
    return with_messages + without


def mark_message_read(database: Database, caller_id: str, message_id: str) -> None:
    msg = database[MESSAGES].find_one({"_id": obj_id(message_id, "message_id")})
    if not msg:
        raise NotFoundError("Message not found")
    if msg["recipient_id"] != caller_id:
        raise Forbidden("Only the recipient can mark a message as read")
    database[MESSAGES].update_one(
        {"_id": msg["_id"], "is_read": False},
        {"$set": {"is_read": True, "read_at": utcnow(), "updated_at": utcnow()}},
    )


def mark_conversation_read(database: Database, caller_id: str, other_id: str, semester_id: str) -> int:
    now = utcnow()
    res = database[MESSAGES].update_many(
        {"sender_id": other_id, "recipient_id": caller_id, "semester_id": semester_id, "is_read": False},
        {"$set": {"is_read": True, "read_at": now, "updated_at": now}},
    )
    return res.modified_count


def unread_count(database: Database, caller_id: str, semester_id: Optional[str] = None) -> int:
    query: Dict[str, Any] = {"recipient_id": caller_id, "is_read": False}
    if semester_id:
        query["semester_id"] = semester_id
    return database[MESSAGES].count_documents(query)
