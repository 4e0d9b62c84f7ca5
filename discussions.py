"""
Discussion board: threads scoped to a semester, open to every participant.
Teachers may pin and close threads; a closed thread takes no replies.
"""

import logging
import math
import re
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import collection_name, create_document, obj_id, serialize_doc, utcnow
from enrollment import is_teacher, load_semester, require_participant, require_teacher, users_by_ids
from errors import DiscussionClosed, Forbidden, NotFoundError, QueryTooShort
from schemas import Discussion, Reply

logger = logging.getLogger(__name__)

DISCUSSIONS = collection_name(Discussion)


def _populate(database: Database, doc: Dict[str, Any]) -> Dict[str, Any]:
    ids = {doc["author_id"]} | {r["author_id"] for r in doc.get("replies", [])}
    people = {str(u["_id"]): serialize_doc(u) for u in users_by_ids(database, ids)}
    data = serialize_doc(doc)
    data["author"] = people.get(doc["author_id"])
    for r in data.get("replies", []):
        r["author"] = people.get(r["author_id"])
    return data


def _page(database: Database, query: Dict[str, Any], page: int, limit: int) -> Dict[str, Any]:
    page, limit = max(page, 1), max(limit, 1)
    cursor = (database[DISCUSSIONS].find(query)
              .sort([("is_pinned", -1), ("last_activity", -1)])
              .skip((page - 1) * limit)
              .limit(limit))
    total = database[DISCUSSIONS].count_documents(query)
    return {
        "discussions": [_populate(database, d) for d in cursor],
        "pagination": {"current": page, "pages": math.ceil(total / limit), "total": total},
    }


def _text_filter(text: str) -> Dict[str, Any]:
    pattern = {"$regex": re.escape(text.strip()), "$options": "i"}
    return {"$or": [{"title": pattern}, {"content": pattern}, {"tags": pattern}]}


def load_discussion(database: Database, discussion_id: str) -> Dict[str, Any]:
    doc = database[DISCUSSIONS].find_one({"_id": obj_id(discussion_id, "discussion_id")})
    if not doc:
        raise NotFoundError("Discussion not found")
    return doc


def create_discussion(database: Database, caller_id: str, title: str, content: str, semester_id: str,
                      category: str = "general", tags: Optional[List[str]] = None) -> Dict[str, Any]:
    semester = load_semester(database, semester_id)
    require_participant(semester, caller_id)
    discussion = Discussion(
        title=title.strip(),
        content=content.strip(),
        author_id=caller_id,
        semester_id=str(semester["_id"]),
        category=category,
        tags=[t.strip() for t in (tags or []) if t and t.strip()],
        last_activity=utcnow(),
    )
    did = create_document(database, DISCUSSIONS, discussion)
    logger.info("Discussion %s opened in semester %s", did, semester_id)
    return _populate(database, database[DISCUSSIONS].find_one({"_id": ObjectId(did)}))


def list_discussions(database: Database, caller_id: str, semester_id: str, page: int = 1, limit: int = 10,
                     category: Optional[str] = None, search: Optional[str] = None) -> Dict[str, Any]:
    semester = load_semester(database, semester_id)
    require_participant(semester, caller_id)
    query: Dict[str, Any] = {"semester_id": str(semester["_id"])}
    if category and category != "all":
        query["category"] = category
    if search and search.strip():
        query.update(_text_filter(search))
    return _page(database, query, page, limit)


def search_discussions(database: Database, caller_id: str, semester_id: str, q: Optional[str],
                       page: int = 1, limit: int = 10) -> Dict[str, Any]:
    if not q or len(q.strip()) < 2:
        raise QueryTooShort()
    semester = load_semester(database, semester_id)
    require_participant(semester, caller_id)
    query = {"semester_id": str(semester["_id"]), **_text_filter(q)}
    return {**_page(database, query, page, limit), "search_query": q}


def _count_view(database: Database, caller_id: str, discussion_id: str) -> Dict[str, Any]:
    doc = load_discussion(database, discussion_id)
    require_participant(load_semester(database, doc["semester_id"]), caller_id)
    doc = database[DISCUSSIONS].find_one_and_update(
        {"_id": doc["_id"]}, {"$inc": {"views": 1}}, return_document=ReturnDocument.AFTER
    )
    # deleted between the load and the increment
    if doc is None:
        raise NotFoundError("Discussion not found")
    return doc


def get_discussion(database: Database, caller_id: str, discussion_id: str) -> Dict[str, Any]:
    """Fetch a thread for display; every fetch counts as a view."""
    return _populate(database, _count_view(database, caller_id, discussion_id))


def record_view(database: Database, caller_id: str, discussion_id: str) -> int:
    return _count_view(database, caller_id, discussion_id)["views"]


def add_reply(database: Database, caller_id: str, discussion_id: str, content: str) -> Dict[str, Any]:
    doc = load_discussion(database, discussion_id)
    if doc.get("is_closed"):
        raise DiscussionClosed()
    require_participant(load_semester(database, doc["semester_id"]), caller_id)
    now = utcnow()
    reply = Reply(id=str(ObjectId()), author_id=caller_id, content=content.strip(), created_at=now, updated_at=now)
    # the is_closed guard keeps a concurrent close from letting this reply through
    doc = database[DISCUSSIONS].find_one_and_update(
        {"_id": doc["_id"], "is_closed": False},
        {"$push": {"replies": reply.model_dump()}, "$set": {"last_activity": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise DiscussionClosed()
    return _populate(database, doc)


def _toggle(database: Database, caller_id: str, discussion_id: str, field: str, message: str) -> bool:
    doc = load_discussion(database, discussion_id)
    require_teacher(load_semester(database, doc["semester_id"]), caller_id, message)
    value = not doc.get(field, False)
    database[DISCUSSIONS].update_one({"_id": doc["_id"]}, {"$set": {field: value, "updated_at": utcnow()}})
    return value


def toggle_pin(database: Database, caller_id: str, discussion_id: str) -> bool:
    return _toggle(database, caller_id, discussion_id, "is_pinned", "Only teachers can pin discussions")


def toggle_close(database: Database, caller_id: str, discussion_id: str) -> bool:
    return _toggle(database, caller_id, discussion_id, "is_closed", "Only teachers can close discussions")


def delete_discussion(database: Database, caller_id: str, discussion_id: str) -> None:
    doc = load_discussion(database, discussion_id)
    semester = load_semester(database, doc["semester_id"])
    if doc["author_id"] != caller_id and not is_teacher(semester, caller_id):
        raise Forbidden("You do not have permission to delete this discussion")
    database[DISCUSSIONS].delete_one({"_id": doc["_id"]})
    logger.info("Discussion %s deleted by %s", discussion_id, caller_id)
