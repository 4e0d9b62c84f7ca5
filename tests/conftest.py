import os
import tempfile
from datetime import timedelta

os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="schoollink-uploads-"))

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import get_db, utcnow
from main import app
from security import ensure_indexes


@pytest.fixture
def mongo():
    database = mongomock.MongoClient()["schoollink_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(mongo):
    app.dependency_overrides[get_db] = lambda: mongo
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def register(client):
    counter = {"n": 0}

    def _register(role, name=None, **extra):
        counter["n"] += 1
        n = counter["n"]
        body = {
            "name": name or f"{role.title()} {n}",
            "email": f"{role}{n}@school.edu",
            "password": "secret123",
            "role": role,
        }
        if role == "student":
            body.setdefault("student_id", f"S{n:03d}")
        if role == "parent":
            body.setdefault("child_name", "Kid")
        body.update(extra)
        res = client.post("/auth/register", json=body)
        assert res.status_code == 201, res.text
        data = res.json()
        return {"token": data["token"], "id": data["user"]["id"], "email": body["email"], "headers": auth(data["token"])}

    return _register


@pytest.fixture
def school(client, register):
    """A current semester: teacher T teaches class C with student S; parent P is linked to S.

    A second teacher T2 teaches class C2 with student S2 and S2's parent P2.
    """
    teacher = register("teacher", "Ms Tan")
    teacher2 = register("teacher", "Mr Lee")
    student = register("student", "Sam", student_id="S100")
    student2 = register("student", "Zoe", student_id="S200")
    parent = register("parent", "Pat", child_name="Sam")
    parent2 = register("parent", "Quinn", child_name="Zoe")

    now = utcnow()
    res = client.post("/semesters", headers=teacher["headers"], json={
        "name": "Fall",
        "school_year": "2025-2026",
        "start_date": (now - timedelta(days=30)).isoformat(),
        "end_date": (now + timedelta(days=120)).isoformat(),
    })
    assert res.status_code == 201, res.text
    sid = res.json()["semester"]["id"]

    roster = [
        (teacher2, "teacher", None),
        (student, "student", "S100"),
        (student2, "student", "S200"),
        (parent, "parent", "S100"),
        (parent2, "parent", "S200"),
    ]
    for who, role, linking_id in roster:
        res = client.post(f"/semesters/{sid}/participants", headers=teacher["headers"],
                          json={"user_id": who["id"], "role": role, "student_id": linking_id})
        assert res.status_code == 200, res.text

    res = client.post(f"/semesters/{sid}/classes", headers=teacher["headers"],
                      json={"name": "C", "student_ids": [student["id"]]})
    assert res.status_code == 201, res.text
    res = client.post(f"/semesters/{sid}/classes", headers=teacher2["headers"],
                      json={"name": "C2", "student_ids": [student2["id"]]})
    assert res.status_code == 201, res.text

    return {
        "semester_id": sid,
        "teacher": teacher,
        "teacher2": teacher2,
        "student": student,
        "student2": student2,
        "parent": parent,
        "parent2": parent2,
    }
