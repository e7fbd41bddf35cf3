import os
from datetime import datetime, timedelta

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from bson import ObjectId
from bson.errors import InvalidId

from database import get_db
from errors import Forbidden, Unauthorized

SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 12))
ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()}

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


class Token(BaseModel):
    access_token: str
    token_type: str


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def get_user_by_email(db, email: str):
    return db["user"].find_one({"email": email})


def get_user(db, user_id: str):
    try:
        return db["user"].find_one({"_id": ObjectId(user_id)})
    except (InvalidId, TypeError):
        return None


async def get_current_user(token: str | None = Depends(oauth2_scheme), db=Depends(get_db)):
    if not token:
        raise Unauthorized("Not authenticated")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str | None = payload.get("sub")
        if user_id is None:
            raise Unauthorized()
    except JWTError:
        raise Unauthorized()
    user = get_user(db, user_id)
    if user is None:
        raise Unauthorized()
    return {
        "_id": str(user["_id"]),
        "email": user["email"],
        "name": user.get("name", ""),
        "is_admin": bool(user.get("is_admin", False)),
    }


async def get_current_admin(current=Depends(get_current_user)):
    if not current.get("is_admin"):
        raise Forbidden()
    return current
