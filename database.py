import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

# -------------------- Collections -------------------- #
USERS = "users"
STUDENTS = "students"
COLLABORATORS = "collaborators"
GROUPS = "groups"
EVENTS = "calendar_events"
INVITATIONS = "event_invitations"
ATTENDANCES = "attendances"
ABSENCES = "staff_absences"
NOTIFICATIONS = "notifications"
PREFERENCES = "notification_preferences"
SIMULATIONS = "simulations"
ASSIGNMENTS = "simulation_assignments"
RESULTS = "simulation_results"
AUDIT_LOGS = "audit_logs"

client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database non disponibile")
    return db


def to_object_id(value: Union[str, ObjectId], detail: str = "Risorsa non trovata") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=404, detail=detail)


def object_ids(values: List[str]) -> List[ObjectId]:
    """Valid ObjectIds among the given strings; malformed ids are dropped."""
    out = []
    for v in values:
        if ObjectId.is_valid(v):
            out.append(ObjectId(v))
    return out


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    data_dict = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def update_document(database: Database, collection_name: str, doc_id: Union[str, ObjectId],
                    fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    oid = doc_id if isinstance(doc_id, ObjectId) else to_object_id(doc_id)
    return database[collection_name].find_one_and_update(
        {"_id": oid},
        {"$set": {**fields, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def changed_fields(payload: BaseModel, clearable: Iterable[str] = ()) -> Dict[str, Any]:
    """Fields sent by the client; an explicit null is kept only for fields that may be cleared."""
    data = payload.model_dump(exclude_unset=True)
    clearable = set(clearable)
    return {k: v for k, v in data.items() if v is not None or k in clearable}


def paginate(database: Database, collection_name: str, filter_dict: Dict[str, Any],
             sort: List[Tuple[str, int]], page: int, page_size: int) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    coll = database[collection_name]
    total = coll.count_documents(filter_dict)
    docs = list(coll.find(filter_dict).sort(sort).skip((page - 1) * page_size).limit(page_size))
    pagination = {
        "page": page,
        "page_size": page_size,
        "total": total,
        "total_pages": -(-total // page_size),
    }
    return docs, pagination


def _serialize_value(v: Any) -> Any:
    if isinstance(v, ObjectId):
        return str(v)
    if isinstance(v, dict):
        return {k: _serialize_value(x) for k, x in v.items()}
    if isinstance(v, list):
        return [_serialize_value(x) for x in v]
    if hasattr(v, "isoformat"):
        return v.isoformat()
    return v


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    return {k: _serialize_value(v) for k, v in d.items()}


def serialize_list(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in docs]


def ensure_indexes(database: Database) -> None:
    database[USERS].create_index([("email", ASCENDING)], unique=True)
    database[STUDENTS].create_index([("user_id", ASCENDING)], unique=True)
    database[COLLABORATORS].create_index([("user_id", ASCENDING)], unique=True)
    database[INVITATIONS].create_index([("event_id", ASCENDING), ("user_id", ASCENDING), ("group_id", ASCENDING)], unique=True)
    database[ATTENDANCES].create_index([("event_id", ASCENDING), ("student_id", ASCENDING)], unique=True)
    database[PREFERENCES].create_index([("user_id", ASCENDING), ("notification_type", ASCENDING)], unique=True)
    database[NOTIFICATIONS].create_index([("user_id", ASCENDING), ("is_archived", ASCENDING), ("created_at", ASCENDING)])
    database[RESULTS].create_index([("simulation_id", ASCENDING), ("student_id", ASCENDING)])
    logger.info("Database indexes ensured on %s", database.name)
