"""
Personal calendar items (todos and events) scoped to a semester.

Only the creator can change or remove an item. Anyone else gets the same
"not found or no permission" answer as for a missing id.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import collection_name, create_document, serialize_doc, to_naive_utc, utcnow
from enrollment import SEMESTERS
from errors import Forbidden, InvalidTimeRange, NotFoundError
from schemas import CalendarEvent

logger = logging.getLogger(__name__)

EVENTS = collection_name(CalendarEvent)

UPDATABLE_FIELDS = ("title", "description", "start", "end", "priority", "type", "link", "link_text")


def check_time_range(start: datetime, end: datetime) -> None:
    if to_naive_utc(end) <= to_naive_utc(start):
        raise InvalidTimeRange(errors=[{"field": "end", "message": "End time must be later than start time"}])


def _semester_summary(database: Database, semester_id: str) -> Optional[Dict[str, Any]]:
    if not ObjectId.is_valid(semester_id):
        return None
    sem = database[SEMESTERS].find_one({"_id": ObjectId(semester_id)}, {"name": 1, "school_year": 1})
    return serialize_doc(sem)


def _view(database: Database, doc: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(doc)
    data["semester"] = _semester_summary(database, doc["semester_id"])
    return data


def _owned(database: Database, caller_id: str, event_id: str, action: str) -> Dict[str, Any]:
    doc = None
    if ObjectId.is_valid(event_id):
        doc = database[EVENTS].find_one({"_id": ObjectId(event_id), "created_by": caller_id})
    if not doc:
        raise NotFoundError(f"Event not found or you have no permission to {action} it")
    return doc


def list_events(database: Database, caller_id: str, semester_id: Optional[str] = None,
                start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"created_by": caller_id}
    if semester_id:
        query["semester_id"] = semester_id
    if start and end:
        query["start"] = {"$gte": to_naive_utc(start), "$lte": to_naive_utc(end)}
    docs = database[EVENTS].find(query).sort("start", 1)
    return [_view(database, d) for d in docs]


def create_event(database: Database, caller_id: str, semester_id: str, title: str, start: datetime, end: datetime,
                 description: str = "", priority: str = "medium", type: str = "todo",
                 link: str = "", link_text: str = "") -> Dict[str, Any]:
    semester = None
    if ObjectId.is_valid(semester_id):
        semester = database[SEMESTERS].find_one({"_id": ObjectId(semester_id), "participants.user_id": caller_id})
    if not semester:
        raise Forbidden("You do not have permission to create events in this semester")
    check_time_range(start, end)
    event = CalendarEvent(
        title=title.strip(),
        description=description or "",
        start=to_naive_utc(start),
        end=to_naive_utc(end),
        priority=priority,
        type=type,
        link=link or "",
        link_text=link_text or "",
        semester_id=semester_id,
        created_by=caller_id,
    )
    eid = create_document(database, EVENTS, event)
    logger.info("Calendar event %s created by %s", eid, caller_id)
    return _view(database, database[EVENTS].find_one({"_id": ObjectId(eid)}))


def update_event(database: Database, caller_id: str, event_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    doc = _owned(database, caller_id, event_id, "modify")
    updates = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS and v is not None}
    for key in ("start", "end"):
        if key in updates:
            updates[key] = to_naive_utc(updates[key])
    check_time_range(updates.get("start", doc["start"]), updates.get("end", doc["end"]))
    if "title" in updates:
        updates["title"] = updates["title"].strip()
    updates["updated_at"] = utcnow()
    doc = database[EVENTS].find_one_and_update(
        {"_id": doc["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return _view(database, doc)


def delete_event(database: Database, caller_id: str, event_id: str) -> None:
    doc = _owned(database, caller_id, event_id, "delete")
    database[EVENTS].delete_one({"_id": doc["_id"]})


def toggle_complete(database: Database, caller_id: str, event_id: str) -> Dict[str, Any]:
    doc = _owned(database, caller_id, event_id, "modify")
    doc = database[EVENTS].find_one_and_update(
        {"_id": doc["_id"]},
        {"$set": {"is_completed": not doc.get("is_completed", False), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return _view(database, doc)
