import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo.database import Database

from database import (
    ASSIGNMENTS, GROUPS, INVITATIONS, USERS, create_document, get_db, object_ids, serialize_doc, serialize_list,
    to_object_id,
)
from notifier import notify_group_member_added
from schemas import Group
from security import admin_only, is_admin, protected, staff_only

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/groups", tags=["groups"])

GROUP_NOT_FOUND = "Gruppo non trovato"


class GroupPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    member_ids: List[str] = Field(default_factory=list)
    referent_id: Optional[str] = None


class MembersPayload(BaseModel):
    user_ids: List[str] = Field(..., min_length=1)


def group_ids_for_user(db: Database, user_id: str) -> List[str]:
    return [str(g["_id"]) for g in db[GROUPS].find({"member_ids": user_id}, {"_id": 1})]


def members_of_groups(db: Database, group_ids: List[str]) -> List[str]:
    members: List[str] = []
    for g in db[GROUPS].find({"_id": {"$in": object_ids(group_ids)}}, {"member_ids": 1}):
        members.extend(g.get("member_ids", []))
    return list(dict.fromkeys(members))


def get_group(db: Database, group_id: str) -> Dict[str, Any]:
    group = db[GROUPS].find_one({"_id": to_object_id(group_id, GROUP_NOT_FOUND)})
    if not group:
        raise HTTPException(status_code=404, detail=GROUP_NOT_FOUND)
    return group


def _existing_user_ids(db: Database, user_ids: List[str]) -> List[str]:
    return [str(u["_id"]) for u in db[USERS].find({"_id": {"$in": object_ids(user_ids)}}, {"_id": 1})]


def _with_members(db: Database, group: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(group)
    users = db[USERS].find({"_id": {"$in": object_ids(group.get("member_ids", []))}})
    out["members"] = [{"id": str(u["_id"]), "name": u.get("name"), "role": u.get("role")} for u in users]
    out["member_count"] = len(group.get("member_ids", []))
    return out


@router.post("")
def create_group(payload: GroupPayload, user=Depends(staff_only), db: Database = Depends(get_db)):
    members = _existing_user_ids(db, list(dict.fromkeys(payload.member_ids)))
    doc = Group(
        name=payload.name.strip(),
        description=payload.description,
        member_ids=members,
        referent_id=payload.referent_id,
        created_by_id=user["sub"],
    )
    gid = create_document(db, GROUPS, doc)
    if members:
        notify_group_member_added(db, {"_id": gid, "name": doc.name}, members)
    return {"id": gid}


@router.get("")
def list_groups(user=Depends(staff_only), db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {}
    if not is_admin(user):
        filt = {"$or": [{"member_ids": user["sub"]}, {"referent_id": user["sub"]}]}
    docs = list(db[GROUPS].find(filt).sort("name", 1))
    out = serialize_list(docs)
    for d in out:
        d["member_count"] = len(d.get("member_ids", []))
    return out


@router.get("/mine")
def my_groups(user=Depends(protected), db: Database = Depends(get_db)):
    docs = db[GROUPS].find({"$or": [{"member_ids": user["sub"]}, {"referent_id": user["sub"]}]}).sort("name", 1)
    return [_with_members(db, g) for g in docs]


@router.get("/{group_id}")
def get_group_detail(group_id: str, user=Depends(staff_only), db: Database = Depends(get_db)):
    return _with_members(db, get_group(db, group_id))


@router.post("/{group_id}/members")
def add_members(group_id: str, payload: MembersPayload, user=Depends(staff_only), db: Database = Depends(get_db)):
    group = get_group(db, group_id)
    current = set(group.get("member_ids", []))
    new_ids = [u for u in _existing_user_ids(db, list(dict.fromkeys(payload.user_ids))) if u not in current]
    if new_ids:
        db[GROUPS].update_one({"_id": group["_id"]}, {"$addToSet": {"member_ids": {"$each": new_ids}}})
        notify_group_member_added(db, group, new_ids)
    return {"added": len(new_ids)}


@router.delete("/{group_id}/members/{user_id}")
def remove_member(group_id: str, user_id: str, user=Depends(staff_only), db: Database = Depends(get_db)):
    group = get_group(db, group_id)
    res = db[GROUPS].update_one({"_id": group["_id"]}, {"$pull": {"member_ids": user_id}})
    return {"removed": res.modified_count}


@router.delete("/{group_id}")
def delete_group(group_id: str, user=Depends(admin_only), db: Database = Depends(get_db)):
    group = get_group(db, group_id)
    db[INVITATIONS].delete_many({"group_id": group_id})
    db[ASSIGNMENTS].delete_many({"group_id": group_id})
    db[GROUPS].delete_one({"_id": group["_id"]})
    logger.info("Group %s deleted by %s", group_id, user["sub"])
    return {"id": group_id, "deleted": True}
