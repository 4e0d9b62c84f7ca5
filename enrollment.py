"""
Enrollment registry: semesters, their participant rosters and classes, and
the visibility rules deciding who may message whom.

Rosters are embedded in the semester document. Every roster write is
version-checked so concurrent edits by two teachers cannot silently drop
each other's changes.
"""

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from bson import ObjectId
from pymongo.database import Database

from database import collection_name, create_document, obj_id, serialize_doc, utcnow
from errors import (
    AlreadyEnrolled, ConflictError, EnrollmentNotFound, Forbidden, InvalidTimeRange,
    NotEnrolled, NotFoundError, QueryTooShort, ValidationError,
)
from schemas import Participant, Semester, User

logger = logging.getLogger(__name__)

SEMESTERS = collection_name(Semester)
USERS = collection_name(User)

PUBLIC_USER_FIELDS = {"name": 1, "email": 1, "avatar": 1, "role": 1, "student_id": 1,
                      "child_name": 1, "grade": 1, "subjects": 1}


# -------------------- Semester state -------------------- #

def is_currently_active(semester: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return bool(semester.get("is_active")) and semester["start_date"] <= now <= semester["end_date"]


def decorate(semester: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    active = is_currently_active(semester, now)
    return {**serialize_doc(semester), "is_currently_active": active, "priority": "high" if active else "low"}


def load_semester(database: Database, semester_id: str) -> Dict[str, Any]:
    semester = database[SEMESTERS].find_one({"_id": obj_id(semester_id, "semester_id")})
    if not semester:
        raise EnrollmentNotFound()
    return semester


def find_participant(semester: Dict[str, Any], user_id: str) -> Optional[Dict[str, Any]]:
    for p in semester.get("participants", []):
        if p["user_id"] == user_id:
            return p
    return None


def require_participant(semester: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    participant = find_participant(semester, user_id)
    if participant is None:
        raise NotEnrolled()
    return participant


def is_teacher(semester: Dict[str, Any], user_id: str) -> bool:
    participant = find_participant(semester, user_id)
    return participant is not None and participant["role"] == "teacher"


def require_teacher(semester: Dict[str, Any], user_id: str, message: str) -> None:
    if not is_teacher(semester, user_id):
        raise Forbidden(message)


def find_class(semester: Dict[str, Any], class_id: str) -> Dict[str, Any]:
    for c in semester.get("classes", []):
        if c["id"] == class_id:
            return c
    raise NotFoundError("Class not found")


# -------------------- Visibility -------------------- #

def _teacher_counterparts(semester: Dict[str, Any], me: Dict[str, Any]) -> Set[str]:
    enrolled = {p["user_id"]: p for p in semester.get("participants", [])}
    students: Set[str] = set()
    for c in semester.get("classes", []):
        if c["teacher_id"] == me["user_id"]:
            students.update(c.get("student_ids", []))
    linking_ids = {enrolled[s].get("student_id") for s in students if s in enrolled}
    linking_ids.discard(None)
    parents = {
        p["user_id"] for p in enrolled.values()
        if p["role"] == "parent" and p.get("student_id") in linking_ids
    }
    return students | parents


def _student_counterparts(semester: Dict[str, Any], me: Dict[str, Any]) -> Set[str]:
    return {c["teacher_id"] for c in semester.get("classes", []) if me["user_id"] in c.get("student_ids", [])}


def _parent_counterparts(semester: Dict[str, Any], me: Dict[str, Any]) -> Set[str]:
    linking_id = me.get("student_id")
    if not linking_id:
        return set()
    children = {
        p["user_id"] for p in semester.get("participants", [])
        if p["role"] == "student" and p.get("student_id") == linking_id
    }
    return {c["teacher_id"] for c in semester.get("classes", []) if children.intersection(c.get("student_ids", []))}


_RESOLVERS: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Set[str]]] = {
    "teacher": _teacher_counterparts,
    "student": _student_counterparts,
    "parent": _parent_counterparts,
}


def counterparts(semester: Dict[str, Any], caller_id: str) -> Set[str]:
    """Ids of the accounts `caller_id` may exchange direct messages with in this semester.

    Teachers see the students of their own classes and those students' parents;
    students and parents see the teachers of the classes the student attends.
    Computed from the current roster on every call.
    """
    me = require_participant(semester, caller_id)
    try:
        resolver = _RESOLVERS[me["role"]]
    except KeyError:
        raise ValueError(f"Unknown participant role: {me['role']!r}")
    enrolled = {p["user_id"] for p in semester.get("participants", [])}
    found = resolver(semester, me)
    found.discard(caller_id)
    return found & enrolled


# -------------------- Semester lifecycle -------------------- #

def create_semester(database: Database, user: Dict[str, Any], name: str, school_year: str,
                    start_date: datetime, end_date: datetime, description: str = "") -> Dict[str, Any]:
    if user["role"] != "teacher":
        raise Forbidden("Only teachers can create semesters")
    if start_date >= end_date:
        raise InvalidTimeRange("End date must be later than start date")
    creator = Participant(user_id=str(user["_id"]), role="teacher")
    semester = Semester(
        name=name.strip(),
        school_year=school_year.strip(),
        start_date=start_date,
        end_date=end_date,
        description=description or "",
        participants=[creator],
    )
    sid = create_document(database, SEMESTERS, semester)
    logger.info("Semester %s created by %s", sid, user["_id"])
    return database[SEMESTERS].find_one({"_id": ObjectId(sid)})


def list_semesters(database: Database, user_id: str, scope: str = "mine", include_archived: bool = False,
                   now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or utcnow()
    query: Dict[str, Any] = {"participants.user_id": user_id}
    sort_key = "start_date"
    if scope == "archived":
        query["$or"] = [{"end_date": {"$lt": now}}, {"is_active": False}]
        sort_key = "end_date"
    elif scope == "active" or not include_archived:
        query.update({"start_date": {"$lte": now}, "end_date": {"$gte": now}, "is_active": True})
    docs = database[SEMESTERS].find(query).sort(sort_key, -1)
    return [decorate(d, now) for d in docs]


def _save(database: Database, semester: Dict[str, Any], changes: Dict[str, Any],
          expected_version: Optional[int] = None) -> Dict[str, Any]:
    current = semester.get("version", 0)
    if expected_version is not None and expected_version != current:
        raise ConflictError()
    changes = {**changes, "updated_at": utcnow()}
    res = database[SEMESTERS].update_one(
        {"_id": semester["_id"], "version": current},
        {"$set": changes, "$inc": {"version": 1}},
    )
    if res.matched_count == 0:
        logger.warning("Version conflict on semester %s (version %s)", semester["_id"], current)
        raise ConflictError()
    return database[SEMESTERS].find_one({"_id": semester["_id"]})


def add_participant(database: Database, semester: Dict[str, Any], caller_id: str, user_id: str, role: str,
                    student_id: Optional[str] = None, expected_version: Optional[int] = None) -> Dict[str, Any]:
    require_teacher(semester, caller_id, "Only teachers can add participants")
    if role in ("student", "parent") and not student_id:
        raise ValidationError("Students and parents need a student id",
                              errors=[{"field": "student_id", "message": "Required for students and parents"}])
    if not database[USERS].find_one({"_id": obj_id(user_id, "user_id")}, {"_id": 1}):
        raise NotFoundError("User not found")
    if find_participant(semester, user_id):
        raise AlreadyEnrolled()
    entry = Participant(user_id=user_id, role=role, student_id=student_id if role != "teacher" else None)
    participants = semester.get("participants", []) + [entry.model_dump()]
    return _save(database, semester, {"participants": participants}, expected_version)


def remove_participant(database: Database, semester: Dict[str, Any], caller_id: str, user_id: str,
                       expected_version: Optional[int] = None) -> Dict[str, Any]:
    require_teacher(semester, caller_id, "Only teachers can remove participants")
    participants = [p for p in semester.get("participants", []) if p["user_id"] != user_id]
    classes = [
        {**c, "student_ids": [s for s in c.get("student_ids", []) if s != user_id]}
        for c in semester.get("classes", [])
    ]
    return _save(database, semester, {"participants": participants, "classes": classes}, expected_version)


def archive_semester(database: Database, semester: Dict[str, Any], caller_id: str) -> Dict[str, Any]:
    require_teacher(semester, caller_id, "Only teachers can archive semesters")
    return _save(database, semester, {"is_active": False})


# -------------------- Classes -------------------- #

def _check_roles(semester: Dict[str, Any], user_ids: Iterable[str], role: str) -> None:
    bad = [uid for uid in user_ids if (find_participant(semester, uid) or {}).get("role") != role]
    if bad:
        raise ValidationError(f"Not enrolled as {role}: {', '.join(bad)}",
                              errors=[{"field": f"{role}_ids", "message": f"Not enrolled as {role}"}])


def create_class(database: Database, semester: Dict[str, Any], caller_id: str, name: str,
                 teacher_id: Optional[str] = None, student_ids: Optional[List[str]] = None,
                 expected_version: Optional[int] = None) -> Dict[str, Any]:
    require_teacher(semester, caller_id, "Only teachers can manage classes")
    teacher_id = teacher_id or caller_id
    student_ids = list(dict.fromkeys(student_ids or []))
    _check_roles(semester, [teacher_id], "teacher")
    _check_roles(semester, student_ids, "student")
    entry = {"id": str(ObjectId()), "name": name.strip(), "teacher_id": teacher_id, "student_ids": student_ids}
    classes = semester.get("classes", []) + [entry]
    return _save(database, semester, {"classes": classes}, expected_version)


def add_class_students(database: Database, semester: Dict[str, Any], caller_id: str, class_id: str,
                       student_ids: List[str], expected_version: Optional[int] = None) -> Dict[str, Any]:
    require_teacher(semester, caller_id, "Only teachers can manage classes")
    target = find_class(semester, class_id)
    _check_roles(semester, student_ids, "student")
    merged = list(dict.fromkeys(target.get("student_ids", []) + list(student_ids)))
    classes = [{**c, "student_ids": merged} if c["id"] == class_id else c for c in semester["classes"]]
    return _save(database, semester, {"classes": classes}, expected_version)


def remove_class_student(database: Database, semester: Dict[str, Any], caller_id: str, class_id: str,
                         student_id: str, expected_version: Optional[int] = None) -> Dict[str, Any]:
    require_teacher(semester, caller_id, "Only teachers can manage classes")
    find_class(semester, class_id)
    classes = [
        {**c, "student_ids": [s for s in c.get("student_ids", []) if s != student_id]} if c["id"] == class_id else c
        for c in semester["classes"]
    ]
    return _save(database, semester, {"classes": classes}, expected_version)


def delete_class(database: Database, semester: Dict[str, Any], caller_id: str, class_id: str,
                 expected_version: Optional[int] = None) -> Dict[str, Any]:
    require_teacher(semester, caller_id, "Only teachers can manage classes")
    find_class(semester, class_id)
    classes = [c for c in semester["classes"] if c["id"] != class_id]
    return _save(database, semester, {"classes": classes}, expected_version)


# -------------------- Directory -------------------- #

def users_by_ids(database: Database, user_ids: Iterable[str], role: Optional[str] = None,
                 sort: Optional[List] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"_id": {"$in": [obj_id(u) for u in user_ids]}}
    if role:
        query["role"] = role
    cursor = database[USERS].find(query, PUBLIC_USER_FIELDS)
    return list(cursor.sort(sort or [("role", 1), ("name", 1)]))


def with_participant_users(database: Database, semester: Dict[str, Any]) -> Dict[str, Any]:
    """Serialized semester with each participant's public account fields attached."""
    people = {str(u["_id"]): serialize_doc(u) for u in users_by_ids(database, [p["user_id"] for p in semester.get("participants", [])])}
    data = decorate(semester)
    for p in data.get("participants", []):
        p["user"] = people.get(p["user_id"])
    return data


def semester_users(database: Database, semester: Dict[str, Any], role: Optional[str] = None) -> Dict[str, Any]:
    """Accounts enrolled in a semester, optionally filtered by the role they hold in it."""
    held = {p["user_id"]: p["role"] for p in semester.get("participants", []) if not role or p["role"] == role}
    users = [serialize_doc(u) for u in users_by_ids(database, held)]
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for u in users:
        grouped.setdefault(held[u["id"]], []).append(u)
    return {"users": users, "users_by_role": grouped, "total": len(users)}


def search_users(database: Database, q: Optional[str], role: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
    if not q or len(q.strip()) < 2:
        raise QueryTooShort()
    pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
    query: Dict[str, Any] = {
        "$or": [{"name": pattern}, {"email": pattern}, {"student_id": pattern}, {"child_name": pattern}],
        "is_active": True,
    }
    if role:
        query["role"] = role
    docs = database[USERS].find(query, PUBLIC_USER_FIELDS).sort("name", 1).limit(limit)
    return [serialize_doc(d) for d in docs]


def get_user(database: Database, user_id: str) -> Dict[str, Any]:
    user = database[USERS].find_one({"_id": obj_id(user_id, "user_id")}, {"password_hash": 0})
    if not user:
        raise NotFoundError("User not found")
    return user
