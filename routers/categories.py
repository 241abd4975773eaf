import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from pymongo.database import Database

from catalog import lookup_category, slugify
from database import create_document, find_by_id, get_db, serialize
from errors import BusinessRuleError, DuplicateError, InvalidInputError
from routers import ok
from schemas import Category
from security import Capability, RequestContext, require

log = logging.getLogger("shop.categories")

router = APIRouter(prefix="/categories", tags=["categories"])


class CategoryIn(BaseModel):
    name: str
    description: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Category name is required")
        return v.strip()


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: Optional[bool] = None


def category_out(db: Database, cat: dict) -> dict:
    out = serialize(cat)
    out["parent"] = lookup_category(db, cat.get("parent_id"))
    return out


def _check_name(db: Database, name: str, exclude_id=None):
    slug = slugify(name)
    if not slug:
        raise InvalidInputError("Category name must contain letters or digits")
    filt = {"$or": [{"name": name}, {"slug": slug}]}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    if db["category"].find_one(filt):
        raise DuplicateError("A category with this name already exists")
    return slug


@router.get("")
def list_categories(db: Database = Depends(get_db)):
    return ok([category_out(db, c) for c in db["category"].find().sort("name", 1)])


@router.get("/{category_id}")
def get_category(category_id: str, db: Database = Depends(get_db)):
    return ok(category_out(db, find_by_id(db, "category", category_id, "Category")))


@router.post("", status_code=201)
def create_category(payload: CategoryIn, _: RequestContext = Depends(require(Capability.manage_catalog)),
                    db: Database = Depends(get_db)):
    slug = _check_name(db, payload.name)
    if payload.parent_id:
        find_by_id(db, "category", payload.parent_id, "Parent category")
    cat = Category(name=payload.name, slug=slug, description=payload.description,
                   parent_id=payload.parent_id or None, is_active=payload.is_active)
    cid = create_document(db, "category", cat)
    log.info("Category %s created (%s)", cid, slug)
    return ok(category_out(db, find_by_id(db, "category", cid, "Category")), "Category created")


@router.put("/{category_id}")
def update_category(category_id: str, payload: CategoryUpdate,
                    _: RequestContext = Depends(require(Capability.manage_catalog)),
                    db: Database = Depends(get_db)):
    cat = find_by_id(db, "category", category_id, "Category")
    update = payload.model_dump(exclude_none=True)
    if "name" in update:
        update["name"] = update["name"].strip()
        if update["name"] != cat["name"]:
            update["slug"] = _check_name(db, update["name"], exclude_id=cat["_id"])
    if update.get("parent_id"):
        if update["parent_id"] == category_id:
            raise BusinessRuleError("A category cannot be its own parent")
        find_by_id(db, "category", update["parent_id"], "Parent category")
    update["updated_at"] = datetime.utcnow()
    db["category"].update_one({"_id": cat["_id"]}, {"$set": update})
    return ok(category_out(db, find_by_id(db, "category", category_id, "Category")))


@router.delete("/{category_id}")
def delete_category(category_id: str, _: RequestContext = Depends(require(Capability.manage_catalog)),
                    db: Database = Depends(get_db)):
    cat = find_by_id(db, "category", category_id, "Category")
    if db["category"].count_documents({"parent_id": category_id}) > 0:
        raise BusinessRuleError("Cannot delete a category that has sub-categories")
    db["category"].delete_one({"_id": cat["_id"]})
    log.info("Category %s deleted", category_id)
    return ok(message="Category deleted")
