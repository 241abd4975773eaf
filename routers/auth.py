import logging
import math
import re
from datetime import datetime, timedelta
from typing import Annotated, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends
from pydantic import AfterValidator, BaseModel, EmailStr, field_validator
from pymongo.database import Database

from config import LOCK_MINUTES, MAX_LOGIN_ATTEMPTS, RESET_TOKEN_TTL_MIN
from database import create_document, get_db
from errors import AuthenticationError, DuplicateError, InvalidInputError, NotFoundError, PermissionDeniedError
from rate_limit import rate_limit
from routers import ok
from schemas import Role, User
from security import (
    RequestContext,
    decode_token,
    get_current_user,
    hash_password,
    public_user,
    random_token,
    token_pair,
    verify_password,
)

log = logging.getLogger("shop.auth")

router = APIRouter(prefix="/auth", tags=["auth"], dependencies=[Depends(rate_limit("auth"))])

PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")


def check_password_strength(value: str) -> str:
    if not PASSWORD_RE.match(value):
        raise ValueError(
            "Password must be at least 8 characters with an uppercase letter, "
            "a lowercase letter, a digit and a special character (@$!%*?&)"
        )
    return value


StrongPassword = Annotated[str, AfterValidator(check_password_strength)]


class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: StrongPassword
    phone: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Name is required")
        return v.strip()


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    password: StrongPassword


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: StrongPassword


@router.post("/register", status_code=201)
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise DuplicateError("Email already registered")
    user = User(
        name=payload.name,
        email=email,
        hashed_password=hash_password(payload.password),
        phone=payload.phone,
        role=Role.customer,
        verification_token=random_token(),
    )
    inserted_id = create_document(db, "user", user)
    doc = db["user"].find_one({"_id": ObjectId(inserted_id)})
    log.info("Registered user %s", inserted_id)
    return ok({**token_pair(doc), "user": public_user(doc)}, "Account created")


@router.post("/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        raise InvalidInputError("Invalid email or password")
    if not user.get("is_active", True):
        raise PermissionDeniedError("This account has been disabled")

    now = datetime.utcnow()
    lock_until = user.get("lock_until")
    if lock_until and lock_until > now:
        raise PermissionDeniedError("Account temporarily locked",
                                    retry_after=math.ceil((lock_until - now).total_seconds()))

    if not verify_password(payload.password, user.get("hashed_password", "")):
        attempts = user.get("login_attempts", 0) + 1
        update = {"login_attempts": attempts}
        if attempts >= MAX_LOGIN_ATTEMPTS:
            update["lock_until"] = now + timedelta(minutes=LOCK_MINUTES)
            log.warning("Locking account %s after %s failed logins", user["_id"], attempts)
        db["user"].update_one({"_id": user["_id"]}, {"$set": update})
        raise InvalidInputError("Invalid email or password")

    db["user"].update_one({"_id": user["_id"]}, {"$set": {"login_attempts": 0, "lock_until": None}})
    return ok({**token_pair(user), "user": public_user(user)})


@router.post("/refresh-token")
def refresh_token(payload: RefreshRequest, db: Database = Depends(get_db)):
    claims = decode_token(payload.refresh_token, refresh=True)
    uid = claims.get("sub")
    user = db["user"].find_one({"_id": ObjectId(uid)}) if uid and ObjectId.is_valid(uid) else None
    if not user or not user.get("is_active", True):
        raise AuthenticationError("User not found")
    return ok(token_pair(user))


@router.get("/verify-email/{token}")
def verify_email(token: str, db: Database = Depends(get_db)):
    res = db["user"].update_one(
        {"verification_token": token},
        {"$set": {"is_verified": True, "verification_token": None, "updated_at": datetime.utcnow()}},
    )
    if res.matched_count == 0:
        raise InvalidInputError("Invalid verification token")
    return ok(message="Email verified")


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        raise NotFoundError("User")
    token = random_token()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "reset_password_token": token,
        "reset_password_expires": datetime.utcnow() + timedelta(minutes=RESET_TOKEN_TTL_MIN),
    }})
    # TODO: send the token by email once an SMTP relay is configured
    log.info("Password reset requested for user %s", user["_id"])
    return ok(message="Password reset email sent")


@router.post("/reset-password/{token}")
def reset_password(token: str, payload: ResetPasswordRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({
        "reset_password_token": token,
        "reset_password_expires": {"$gt": datetime.utcnow()},
    })
    if not user:
        raise InvalidInputError("Invalid or expired token")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "hashed_password": hash_password(payload.password),
        "reset_password_token": None,
        "reset_password_expires": None,
        "login_attempts": 0,
        "lock_until": None,
        "updated_at": datetime.utcnow(),
    }})
    return ok(message="Password has been reset")


@router.post("/change-password")
def change_password(payload: ChangePasswordRequest, ctx: RequestContext = Depends(get_current_user),
                    db: Database = Depends(get_db)):
    if not verify_password(payload.current_password, ctx.user.get("hashed_password", "")):
        raise InvalidInputError("Current password is incorrect")
    db["user"].update_one({"_id": ctx.user["_id"]}, {"$set": {
        "hashed_password": hash_password(payload.new_password),
        "updated_at": datetime.utcnow(),
    }})
    return ok(message="Password changed")
