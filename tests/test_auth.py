import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import security
from errors import DuplicateEmail
from schemas import TeacherProfile
from security import create_access_token


def test_register_returns_token_and_public_user(client):
    res = client.post("/auth/register", json={
        "name": "Ms Tan", "email": "Tan@School.edu", "password": "secret123",
        "role": "teacher", "subjects": ["math"],
    })
    assert res.status_code == 201
    body = res.json()
    assert body["token"]
    assert body["user"]["email"] == "tan@school.edu"
    assert body["user"]["role"] == "teacher"
    assert "password_hash" not in body["user"]


def test_register_keeps_only_fields_of_the_role(client, mongo):
    res = client.post("/auth/register", json={
        "name": "Pat", "email": "pat@school.edu", "password": "secret123",
        "role": "parent", "child_name": "Sam", "subjects": ["ignored"],
    })
    assert res.status_code == 201
    stored = mongo["user"].find_one({"email": "pat@school.edu"})
    assert stored["child_name"] == "Sam"
    assert stored["subjects"] == []
    assert stored["student_id"] is None


def test_register_duplicate_email(client, register):
    first = register("teacher")
    res = client.post("/auth/register", json={
        "name": "Other", "email": first["email"], "password": "secret123", "role": "teacher",
    })
    assert res.status_code == 400
    assert res.json()["message"] == "Email already registered"


def test_register_requires_role_specific_fields(client):
    res = client.post("/auth/register", json={
        "name": "Pat", "email": "pat@school.edu", "password": "secret123", "role": "parent",
    })
    assert res.status_code == 400
    fields = [e["field"] for e in res.json()["errors"]]
    assert any("child_name" in f for f in fields)

    res = client.post("/auth/register", json={
        "name": "Sam", "email": "sam@school.edu", "password": "secret123", "role": "student",
    })
    assert res.status_code == 400
    assert any("student_id" in e["field"] for e in res.json()["errors"])


def test_register_rejects_short_password_and_unknown_role(client):
    res = client.post("/auth/register", json={
        "name": "Sam", "email": "sam@school.edu", "password": "123", "role": "teacher",
    })
    assert res.status_code == 400
    res = client.post("/auth/register", json={
        "name": "Sam", "email": "sam@school.edu", "password": "secret123", "role": "admin",
    })
    assert res.status_code == 400


def test_login_does_not_reveal_which_part_was_wrong(client, register):
    user = register("student")
    wrong_password = client.post("/auth/login", json={"email": user["email"], "password": "nope-nope"})
    unknown_email = client.post("/auth/login", json={"email": "ghost@school.edu", "password": "secret123"})
    assert wrong_password.status_code == unknown_email.status_code == 400
    assert wrong_password.json() == unknown_email.json()


def test_login_stamps_last_login(client, register, mongo):
    user = register("teacher")
    mongo["user"].update_one({"_id": ObjectId(user["id"])}, {"$set": {"last_login": None}})
    res = client.post("/auth/login", json={"email": user["email"], "password": "secret123"})
    assert res.status_code == 200
    assert res.json()["user"]["last_login"]
    assert mongo["user"].find_one({"_id": ObjectId(user["id"])})["last_login"] is not None


def test_token_resolution_failures(client, register, mongo):
    assert client.get("/auth/me").status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Token abc"}).status_code == 401

    user = register("teacher")
    assert client.get("/auth/me", headers=user["headers"]).status_code == 200
    mongo["user"].delete_one({"_id": ObjectId(user["id"])})
    assert client.get("/auth/me", headers=user["headers"]).status_code == 401

    orphan = create_access_token({"sub": str(ObjectId()), "role": "teacher"})
    assert client.get("/auth/me", headers={"Authorization": f"Bearer {orphan}"}).status_code == 401


def test_update_profile(client, register):
    user = register("teacher")
    other = register("teacher")
    res = client.put("/auth/profile", headers=user["headers"], json={"name": "Renamed", "avatar": "a.png"})
    assert res.status_code == 200
    assert res.json()["user"]["name"] == "Renamed"
    assert res.json()["user"]["avatar"] == "a.png"

    res = client.put("/auth/profile", headers=user["headers"], json={"email": other["email"]})
    assert res.status_code == 400


def test_login_accepts_password_with_surrounding_spaces(client):
    res = client.post("/auth/register", json={
        "name": "Ms Tan", "email": "tan@school.edu", "password": " secret123 ", "role": "teacher",
    })
    assert res.status_code == 201
    res = client.post("/auth/login", json={"email": "tan@school.edu", "password": " secret123 "})
    assert res.status_code == 200
    res = client.post("/auth/login", json={"email": "tan@school.edu", "password": "secret123"})
    assert res.status_code == 400
    assert client.post("/auth/login", json={"email": "tan@school.edu", "password": ""}).status_code == 400


def test_email_index_is_unique(register, mongo):
    assert mongo["user"].index_information()["email_1"]["unique"] is True
    first = register("teacher")
    with pytest.raises(DuplicateKeyError):
        mongo["user"].insert_one({"email": first["email"], "role": "teacher"})


class _LaggingUsers:
    """Users collection whose email lookups miss a registration that landed concurrently."""

    def __init__(self, real):
        self._real = real

    def find_one(self, query, *args, **kwargs):
        if "email" in query:
            return None
        return self._real.find_one(query, *args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._real, name)


class _LaggingDatabase:
    def __init__(self, real):
        self._real = real

    def __getitem__(self, name):
        if name == security.USERS:
            return _LaggingUsers(self._real[name])
        return self._real[name]


def test_concurrent_duplicate_email_is_reported_as_duplicate(register, mongo):
    first = register("teacher")
    second = register("teacher")
    racing = _LaggingDatabase(mongo)

    profile = TeacherProfile(name="Other", email=first["email"], password="secret123", role="teacher")
    with pytest.raises(DuplicateEmail):
        security.register(racing, profile)
    assert mongo["user"].count_documents({"email": first["email"]}) == 1

    user = mongo["user"].find_one({"_id": ObjectId(second["id"])})
    with pytest.raises(DuplicateEmail):
        security.update_profile(racing, user, email=first["email"])
    assert mongo["user"].find_one({"_id": user["_id"]})["email"] == second["email"]
