"""
Identity & session: password hashing, JWT issuing, and the per-request
caller resolution used by every authenticated endpoint.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, BCRYPT_ROUNDS, SECRET_KEY
from database import collection_name, create_document, get_db, obj_id, utcnow
from errors import DuplicateEmail, InvalidCredentials, InvalidToken, ValidationError
from schemas import ParentProfile, Profile, StudentProfile, TeacherProfile, User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)

USERS = collection_name(User)


def ensure_indexes(database: Database) -> None:
    """Unique email index backing the duplicate checks in `register` and `update_profile`."""
    database[USERS].create_index("email", unique=True)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def token_for(user: Dict[str, Any]) -> str:
    return create_access_token({"sub": str(user["_id"]), "role": user["role"]})


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role"),
        "avatar": user.get("avatar", ""),
    }


def build_user(profile: Profile) -> User:
    """Turn a registration profile into the stored account, keeping only the fields of its role."""
    base = dict(
        name=profile.name,
        email=profile.email,
        password_hash=hash_password(profile.password),
        role=profile.role,
        avatar=profile.avatar,
    )
    if isinstance(profile, TeacherProfile):
        return User(**base, subjects=profile.subjects)
    if isinstance(profile, ParentProfile):
        return User(**base, child_name=profile.child_name)
    if isinstance(profile, StudentProfile):
        return User(**base, student_id=profile.student_id, grade=profile.grade)
    raise TypeError(f"Unknown profile variant: {type(profile).__name__}")


def register(database: Database, profile: Profile) -> Dict[str, Any]:
    if database[USERS].find_one({"email": profile.email}):
        raise DuplicateEmail()
    account = build_user(profile)
    try:
        uid = create_document(database, USERS, account)
    except DuplicateKeyError:
        raise DuplicateEmail()
    user = database[USERS].find_one({"_id": obj_id(uid)})
    logger.info("Registered %s account %s", user["role"], uid)
    return {"token": token_for(user), "user": public_user(user)}


def login(database: Database, email: str, password: str) -> Dict[str, Any]:
    user = database[USERS].find_one({"email": email.strip().lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise InvalidCredentials()
    now = utcnow()
    database[USERS].update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
    user["last_login"] = now
    return {"token": token_for(user), "user": {**public_user(user), "last_login": now.isoformat()}}


def resolve(database: Database, token: Optional[str]) -> Dict[str, Any]:
    if not token:
        raise InvalidToken("No authentication token provided")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise InvalidToken()
    sub = payload.get("sub")
    if not sub:
        raise InvalidToken()
    try:
        user_id = obj_id(sub)
    except ValidationError:
        raise InvalidToken()
    user = database[USERS].find_one({"_id": user_id})
    if not user:
        raise InvalidToken()
    return user


def bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def get_current_user(request: Request, database: Database = Depends(get_db)) -> Dict[str, Any]:
    """Resolve the caller from this request's Authorization header."""
    return resolve(database, bearer_token(request))


def update_profile(database: Database, user: Dict[str, Any], name: Optional[str] = None,
                   email: Optional[str] = None, avatar: Optional[str] = None) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if name:
        changes["name"] = name.strip()
    if email:
        email = email.strip().lower()
        clash = database[USERS].find_one({"email": email, "_id": {"$ne": user["_id"]}})
        if clash:
            raise DuplicateEmail()
        changes["email"] = email
    if avatar is not None:
        changes["avatar"] = avatar
    if changes:
        changes["updated_at"] = utcnow()
        try:
            database[USERS].update_one({"_id": user["_id"]}, {"$set": changes})
        except DuplicateKeyError:
            raise DuplicateEmail()
    return database[USERS].find_one({"_id": user["_id"]})
