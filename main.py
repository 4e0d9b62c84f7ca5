import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import BackgroundTasks, Body, Depends, FastAPI, File, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError

import calendar_events
import database
import discussions
import enrollment
import messaging
import security
from config import CORS_ORIGINS, LOG_LEVEL, PORT, UPLOAD_DIR
from database import get_db, serialize_doc, serialize_list, to_naive_utc, utcnow
from errors import AppError, AuthError, ValidationError
from notifications import manager
from schemas import (
    Attachment, CalendarEvent, DiscussionCategory, Discussion, EventType, Message, MessageType,
    NonEmptyStr, Priority, Profile, Role, Semester, User,
)
from security import get_current_user

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            security.ensure_indexes(database.db)
            logger.info("Database indexes ensured")
        except PyMongoError as e:
            logger.error("Could not ensure database indexes: %s", e)
    yield


app = FastAPI(title="SchoolLink Communication API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

profile_adapter = TypeAdapter(Profile)


def _field_errors(errors: List[Dict[str, Any]], skip: int = 0) -> List[Dict[str, Any]]:
    out = []
    for e in errors:
        loc = [str(p) for p in e.get("loc", ())][skip:]
        out.append({"field": ".".join(loc), "message": e.get("msg", "Invalid value")})
    return out


# -------------------- Error handling -------------------- #

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"message": "Validation failed", "errors": _field_errors(exc.errors(), skip=1)},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# -------------------- Static files & Uploads -------------------- #
os.makedirs(UPLOAD_DIR, exist_ok=True)
app.mount("/static", StaticFiles(directory=UPLOAD_DIR), name="static")


# -------------------- Request logging -------------------- #
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - start) * 1000
    logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed)
    return response


# -------------------- Meta endpoints -------------------- #

@app.get("/")
def read_root():
    return {"message": "SchoolLink communication backend is running"}


@app.get("/schema")
def get_schema():
    models = [User, Semester, Message, Discussion, CalendarEvent]
    return {m.__name__: m.model_json_schema() for m in models}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        db = get_db()
    except AppError:
        response["database"] = "⚠️  Available but not initialized"
        return response
    response["database"] = "✅ Available"
    response["database_name"] = db.name
    response["connection_status"] = "Connected"
    try:
        response["collections"] = db.list_collection_names()[:50]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        logger.warning("Database probe failed: %s", e)
        response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
    return response


# -------------------- Auth endpoints -------------------- #

class LoginPayload(BaseModel):
    email: str
    password: str = Field(..., min_length=1)


class ProfileUpdatePayload(BaseModel):
    name: Optional[NonEmptyStr] = None
    email: Optional[EmailStr] = None
    avatar: Optional[str] = None


@app.post("/auth/register", status_code=201)
def register_user(payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    try:
        profile = profile_adapter.validate_python(payload)
    except PydanticValidationError as e:
        raise ValidationError(errors=_field_errors(e.errors()))
    result = security.register(db, profile)
    return {"message": "Registration successful", **result}


@app.post("/auth/login")
def login(payload: LoginPayload, db: Database = Depends(get_db)):
    result = security.login(db, payload.email, payload.password)
    return {"message": "Login successful", **result}


@app.get("/auth/me")
def read_me(user=Depends(get_current_user)):
    return {"user": serialize_doc(user)}


@app.put("/auth/profile")
def update_profile(payload: ProfileUpdatePayload, user=Depends(get_current_user), db: Database = Depends(get_db)):
    updated = security.update_profile(db, user, name=payload.name, email=payload.email, avatar=payload.avatar)
    return {"message": "Profile updated", "user": serialize_doc(updated)}


# -------------------- Semester endpoints -------------------- #

class SemesterPayload(BaseModel):
    name: NonEmptyStr
    school_year: NonEmptyStr
    start_date: datetime
    end_date: datetime
    description: str = ""


class ParticipantPayload(BaseModel):
    user_id: str
    role: Role
    student_id: Optional[str] = None
    expected_version: Optional[int] = None


class ClassPayload(BaseModel):
    name: NonEmptyStr
    teacher_id: Optional[str] = None
    student_ids: List[str] = Field(default_factory=list)
    expected_version: Optional[int] = None


class ClassStudentsPayload(BaseModel):
    student_ids: List[str] = Field(..., min_length=1)
    expected_version: Optional[int] = None


def _uid(user: Dict[str, Any]) -> str:
    return str(user["_id"])


@app.post("/semesters", status_code=201)
def create_semester(payload: SemesterPayload, user=Depends(get_current_user), db: Database = Depends(get_db)):
    semester = enrollment.create_semester(
        db, user, payload.name, payload.school_year,
        to_naive_utc(payload.start_date), to_naive_utc(payload.end_date), payload.description,
    )
    return {"message": "Semester created", "semester": enrollment.decorate(semester)}


@app.get("/semesters/mine")
def my_semesters(include_archived: bool = False, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"semesters": enrollment.list_semesters(db, _uid(user), "mine", include_archived=include_archived)}


@app.get("/semesters/active")
def active_semesters(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"semesters": enrollment.list_semesters(db, _uid(user), "active")}


@app.get("/semesters/archived")
def archived_semesters(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"semesters": enrollment.list_semesters(db, _uid(user), "archived")}


@app.get("/semesters/{semester_id}")
def semester_details(semester_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    semester = enrollment.load_semester(db, semester_id)
    enrollment.require_participant(semester, _uid(user))
    return {"semester": enrollment.with_participant_users(db, semester)}


@app.get("/semesters/{semester_id}/counterparts")
def semester_counterparts(semester_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    semester = enrollment.load_semester(db, semester_id)
    ids = enrollment.counterparts(semester, _uid(user))
    return {"users": serialize_list(enrollment.users_by_ids(db, ids))}


@app.post("/semesters/{semester_id}/participants")
def add_participant(semester_id: str, payload: ParticipantPayload, user=Depends(get_current_user),
                    db: Database = Depends(get_db)):
    semester = enrollment.load_semester(db, semester_id)
    semester = enrollment.add_participant(db, semester, _uid(user), payload.user_id, payload.role,
                                          payload.student_id, payload.expected_version)
    return {"message": "Participant added", "semester": enrollment.with_participant_users(db, semester)}


@app.delete("/semesters/{semester_id}/participants/{user_id}")
def remove_participant(semester_id: str, user_id: str, expected_version: Optional[int] = None,
                       user=Depends(get_current_user), db: Database = Depends(get_db)):
    semester = enrollment.load_semester(db, semester_id)
    enrollment.remove_participant(db, semester, _uid(user), user_id, expected_version)
    return {"message": "Participant removed"}


@app.put("/semesters/{semester_id}/archive")
def archive_semester(semester_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    semester = enrollment.load_semester(db, semester_id)
    enrollment.archive_semester(db, semester, _uid(user))
    return {"message": "Semester archived"}


@app.post("/semesters/{semester_id}/classes", status_code=201)
def create_class(semester_id: str, payload: ClassPayload, user=Depends(get_current_user),
                 db: Database = Depends(get_db)):
    semester = enrollment.load_semester(db, semester_id)
    semester = enrollment.create_class(db, semester, _uid(user), payload.name, payload.teacher_id,
                                       payload.student_ids, payload.expected_version)
    return {"message": "Class created", "semester": enrollment.decorate(semester)}


@app.post("/semesters/{semester_id}/classes/{class_id}/students")
def add_class_students(semester_id: str, class_id: str, payload: ClassStudentsPayload,
                       user=Depends(get_current_user), db: Database = Depends(get_db)):
    semester = enrollment.load_semester(db, semester_id)
    semester = enrollment.add_class_students(db, semester, _uid(user), class_id, payload.student_ids,
                                             payload.expected_version)
    return {"message": "Students added", "semester": enrollment.decorate(semester)}


@app.delete("/semesters/{semester_id}/classes/{class_id}/students/{student_id}")
def remove_class_student(semester_id: str, class_id: str, student_id: str, expected_version: Optional[int] = None,
                         user=Depends(get_current_user), db: Database = Depends(get_db)):
    semester = enrollment.load_semester(db, semester_id)
    semester = enrollment.remove_class_student(db, semester, _uid(user), class_id, student_id, expected_version)
    return {"message": "Student removed", "semester": enrollment.decorate(semester)}


@app.delete("/semesters/{semester_id}/classes/{class_id}")
def delete_class(semester_id: str, class_id: str, expected_version: Optional[int] = None,
                 user=Depends(get_current_user), db: Database = Depends(get_db)):
    semester = enrollment.load_semester(db, semester_id)
    enrollment.delete_class(db, semester, _uid(user), class_id, expected_version)
    return {"message": "Class deleted"}


# -------------------- User directory -------------------- #

@app.get("/users/search")
def search_users(q: Optional[str] = None, role: Optional[Role] = None, limit: int = Query(10, ge=1, le=100),
                 user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"users": enrollment.search_users(db, q, role, limit)}


@app.get("/users/semester/{semester_id}")
def semester_users(semester_id: str, role: Optional[Role] = None, user=Depends(get_current_user),
                   db: Database = Depends(get_db)):
    semester = enrollment.load_semester(db, semester_id)
    enrollment.require_participant(semester, _uid(user))
    return enrollment.semester_users(db, semester, role)


@app.get("/users/semester/{semester_id}/teachers")
def semester_teachers(semester_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"teachers": semester_users(semester_id, "teacher", user, db)["users"]}


@app.get("/users/semester/{semester_id}/parents")
def semester_parents(semester_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"parents": semester_users(semester_id, "parent", user, db)["users"]}


@app.get("/users/semester/{semester_id}/students")
def semester_students(semester_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"students": semester_users(semester_id, "student", user, db)["users"]}


@app.get("/users/{user_id}")
def user_profile(user_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"user": serialize_doc(enrollment.get_user(db, user_id))}


# -------------------- Messages -------------------- #

class SendMessagePayload(BaseModel):
    recipient_id: NonEmptyStr
    content: NonEmptyStr
    semester_id: NonEmptyStr
    message_type: MessageType = "text"
    attachments: List[Attachment] = Field(default_factory=list)


@app.post("/messages", status_code=201)
def send_message(payload: SendMessagePayload, background_tasks: BackgroundTasks,
                 user=Depends(get_current_user), db: Database = Depends(get_db)):
    data = messaging.send_message(db, user, payload.recipient_id, payload.content, payload.semester_id,
                                  payload.message_type, payload.attachments)
    background_tasks.add_task(manager.notify, payload.recipient_id, "new_message", data)
    return {"message": "Message sent", "data": data}


@app.get("/messages/conversation/{user_id}/{semester_id}")
def get_conversation(user_id: str, semester_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"messages": messaging.get_conversation(db, _uid(user), user_id, semester_id)}


@app.get("/messages/conversations/{semester_id}")
def list_conversations(semester_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    semester = enrollment.load_semester(db, semester_id)
    return {"conversations": messaging.conversations(db, semester, _uid(user))}


@app.put("/messages/{message_id}/read")
def mark_message_read(message_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    messaging.mark_message_read(db, _uid(user), message_id)
    return {"message": "Message marked as read"}


@app.put("/messages/read-conversation/{user_id}/{semester_id}")
def mark_conversation_read(user_id: str, semester_id: str, background_tasks: BackgroundTasks,
                           user=Depends(get_current_user), db: Database = Depends(get_db)):
    updated = messaging.mark_conversation_read(db, _uid(user), user_id, semester_id)
    if updated:
        background_tasks.add_task(manager.notify, user_id, "messages_read",
                                  {"reader_id": _uid(user), "semester_id": semester_id, "count": updated})
    return {"message": "Conversation marked as read", "updated": updated}


@app.get("/messages/unread-count")
def get_unread_count(semester_id: Optional[str] = None, user=Depends(get_current_user),
                     db: Database = Depends(get_db)):
    return {"unread_count": messaging.unread_count(db, _uid(user), semester_id)}


# -------------------- Discussions -------------------- #

class DiscussionPayload(BaseModel):
    title: NonEmptyStr
    content: NonEmptyStr
    semester_id: NonEmptyStr
    category: DiscussionCategory = "general"
    tags: Union[List[str], str] = Field(default_factory=list)


class ReplyPayload(BaseModel):
    content: NonEmptyStr


@app.post("/discussions", status_code=201)
def create_discussion(payload: DiscussionPayload, user=Depends(get_current_user), db: Database = Depends(get_db)):
    tags = payload.tags if isinstance(payload.tags, list) else [payload.tags]
    discussion = discussions.create_discussion(db, _uid(user), payload.title, payload.content,
                                               payload.semester_id, payload.category, tags)
    return {"message": "Discussion created", "discussion": discussion}


@app.get("/discussions/semester/{semester_id}")
def list_discussions(semester_id: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                     category: Optional[str] = None, search: Optional[str] = None,
                     user=Depends(get_current_user), db: Database = Depends(get_db)):
    return discussions.list_discussions(db, _uid(user), semester_id, page, limit, category, search)


@app.get("/discussions/search/{semester_id}")
def search_discussions(semester_id: str, q: Optional[str] = None, page: int = Query(1, ge=1),
                       limit: int = Query(10, ge=1, le=100), user=Depends(get_current_user),
                       db: Database = Depends(get_db)):
    return discussions.search_discussions(db, _uid(user), semester_id, q, page, limit)


@app.get("/discussions/{discussion_id}")
def discussion_details(discussion_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"discussion": discussions.get_discussion(db, _uid(user), discussion_id)}


@app.post("/discussions/{discussion_id}/replies")
def add_reply(discussion_id: str, payload: ReplyPayload, user=Depends(get_current_user),
              db: Database = Depends(get_db)):
    discussion = discussions.add_reply(db, _uid(user), discussion_id, payload.content)
    return {"message": "Reply added", "discussion": discussion}


@app.put("/discussions/{discussion_id}/pin")
def pin_discussion(discussion_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    pinned = discussions.toggle_pin(db, _uid(user), discussion_id)
    return {"message": "Discussion pinned" if pinned else "Discussion unpinned", "is_pinned": pinned}


@app.put("/discussions/{discussion_id}/close")
def close_discussion(discussion_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    closed = discussions.toggle_close(db, _uid(user), discussion_id)
    return {"message": "Discussion closed" if closed else "Discussion reopened", "is_closed": closed}


@app.post("/discussions/{discussion_id}/view")
def view_discussion(discussion_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"message": "View recorded", "views": discussions.record_view(db, _uid(user), discussion_id)}


@app.delete("/discussions/{discussion_id}")
def delete_discussion(discussion_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    discussions.delete_discussion(db, _uid(user), discussion_id)
    return {"message": "Discussion deleted"}


# -------------------- Calendar -------------------- #

class EventPayload(BaseModel):
    title: NonEmptyStr
    start: datetime
    end: datetime
    semester_id: NonEmptyStr
    description: str = ""
    priority: Priority = "medium"
    type: EventType = "todo"
    link: str = ""
    link_text: str = ""


class EventUpdatePayload(BaseModel):
    title: Optional[NonEmptyStr] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    description: Optional[str] = None
    priority: Optional[Priority] = None
    type: Optional[EventType] = None
    link: Optional[str] = None
    link_text: Optional[str] = None


@app.get("/calendar/events")
def list_events(semester_id: Optional[str] = None, start: Optional[datetime] = None, end: Optional[datetime] = None,
                user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"events": calendar_events.list_events(db, _uid(user), semester_id, start, end)}


@app.post("/calendar/events", status_code=201)
def create_event(payload: EventPayload, user=Depends(get_current_user), db: Database = Depends(get_db)):
    event = calendar_events.create_event(
        db, _uid(user), payload.semester_id, payload.title, payload.start, payload.end,
        description=payload.description, priority=payload.priority, type=payload.type,
        link=payload.link, link_text=payload.link_text,
    )
    return {"message": "Event created", "event": event}


@app.put("/calendar/events/{event_id}")
def update_event(event_id: str, payload: EventUpdatePayload, user=Depends(get_current_user),
                 db: Database = Depends(get_db)):
    event = calendar_events.update_event(db, _uid(user), event_id, payload.model_dump(exclude_unset=True))
    return {"message": "Event updated", "event": event}


@app.delete("/calendar/events/{event_id}")
def delete_event(event_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    calendar_events.delete_event(db, _uid(user), event_id)
    return {"message": "Event deleted"}


@app.patch("/calendar/events/{event_id}/toggle-complete")
def toggle_event_complete(event_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"message": "Event status updated", "event": calendar_events.toggle_complete(db, _uid(user), event_id)}


# -------------------- File upload -------------------- #

@app.post("/upload")
async def upload_file(file: UploadFile = File(...), user=Depends(get_current_user)):
    if not file.filename:
        raise ValidationError("Filename required", errors=[{"field": "file", "message": "Filename required"}])
    name, ext = os.path.splitext(file.filename)
    safe = name.replace(" ", "_").replace("/", "_").replace("\\", "_")[:64]
    ts = utcnow().strftime("%Y%m%d%H%M%S%f")
    filename = f"{safe}_{ts}{ext}"
    dest = os.path.join(UPLOAD_DIR, filename)
    content = await file.read()
    with open(dest, "wb") as f:
        f.write(content)
    logger.info("Stored upload %s (%d bytes) for %s", filename, len(content), user["_id"])
    return {"file_name": file.filename, "file_url": f"/static/{filename}",
            "file_type": file.content_type, "file_size": len(content)}


# -------------------- Real-time -------------------- #

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None, db: Database = Depends(get_db)):
    try:
        user = security.resolve(db, token)
    except AuthError:
        await websocket.close(code=1008)
        return
    user_id = str(user["_id"])
    await manager.connect(user_id, websocket)
    try:
        while True:
            # clients only listen; anything they send is treated as a keepalive
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(user_id, websocket)


# -------------------- Run -------------------- #

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
