import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr
from pymongo.database import Database

from database import find_by_id, get_db
from errors import DuplicateError, PermissionDeniedError
from routers import ok
from schemas import Role
from security import Capability, RequestContext, get_current_user, public_user, require

log = logging.getLogger("shop.users")

router = APIRouter(prefix="/users", tags=["users"])


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


@router.get("/me")
def me(ctx: RequestContext = Depends(get_current_user)):
    return ok(public_user(ctx.user))


@router.put("/me")
def update_profile(payload: ProfileUpdate, ctx: RequestContext = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    update = {k: v for k, v in payload.model_dump(exclude_none=True).items() if v != ""}
    if "email" in update:
        update["email"] = update["email"].lower()
        if update["email"] != ctx.user.get("email") and db["user"].find_one({"email": update["email"]}):
            raise DuplicateError("Email already in use")
    update["updated_at"] = datetime.utcnow()
    db["user"].update_one({"_id": ctx.user["_id"]}, {"$set": update})
    user = db["user"].find_one({"_id": ctx.user["_id"]})
    return ok(public_user(user))


@router.get("/count")
def user_count(_: RequestContext = Depends(require(Capability.manage_users)), db: Database = Depends(get_db)):
    return ok({"count": db["user"].count_documents({})})


@router.get("")
def list_users(role: Optional[Role] = None, _: RequestContext = Depends(require(Capability.manage_users)),
               db: Database = Depends(get_db)):
    filt = {"role": role.value} if role else {}
    users = db["user"].find(filt).sort("created_at", -1)
    return ok([public_user(u) for u in users])


@router.patch("/{user_id}/disable")
def disable_user(user_id: str, ctx: RequestContext = Depends(require(Capability.manage_users)),
                 db: Database = Depends(get_db)):
    user = find_by_id(db, "user", user_id, "User")
    if user.get("role") == Role.admin.value and str(user["_id"]) != ctx.user_id:
        raise PermissionDeniedError("You cannot disable another administrator")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_active": False, "updated_at": datetime.utcnow()}})
    log.info("User %s disabled by %s", user_id, ctx.user_id)
    return ok(message="User disabled")


@router.patch("/{user_id}/enable")
def enable_user(user_id: str, ctx: RequestContext = Depends(require(Capability.manage_users)),
                db: Database = Depends(get_db)):
    user = find_by_id(db, "user", user_id, "User")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_active": True, "updated_at": datetime.utcnow()}})
    log.info("User %s enabled by %s", user_id, ctx.user_id)
    return ok(message="User enabled")
