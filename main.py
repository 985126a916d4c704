import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
import database
from database import AUDIT_LOGS, USERS, create_document, ensure_indexes
from errors import register_error_handlers
from routers import (
    auth, calendar, collaborators, cron, groups, notifications, simulations, statistics, students, users,
)
from schemas import SCHEMA_MODELS, AuditLog, User, UserRole
from security import get_current_user, hash_password

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)


def bootstrap_admin(db: Database) -> bool:
    """Create the first admin from the environment when none exists yet."""
    if not (config.BOOTSTRAP_ADMIN_EMAIL and config.BOOTSTRAP_ADMIN_PASSWORD):
        return False
    if db[USERS].find_one({"role": UserRole.ADMIN.value}):
        return False
    admin = User(
        name=config.BOOTSTRAP_ADMIN_NAME,
        email=config.BOOTSTRAP_ADMIN_EMAIL.strip().lower(),
        password_hash=hash_password(config.BOOTSTRAP_ADMIN_PASSWORD),
        role=UserRole.ADMIN,
        is_active=True,
        profile_completed=True,
    )
    create_document(db, USERS, admin)
    logger.info("Bootstrap admin %s created", admin.email)
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
            bootstrap_admin(database.db)
        except PyMongoError as e:
            logger.error("Database initialisation failed: %s", e)
    else:
        logger.warning("DATABASE_URL not set; running without a database")
    yield


app = FastAPI(title=config.APP_NAME, version=config.VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

for module in (auth, users, collaborators, students, groups, calendar, notifications, simulations, statistics, cron):
    app.include_router(module.router)


# -------------------- Audit Middleware -------------------- #
@app.middleware("http")
async def audit_middleware(request: Request, call_next):
    user = await get_current_user(request)
    response = await call_next(request)
    if database.db is not None:
        log = AuditLog(
            user_id=(user or {}).get("sub"),
            role=(user or {}).get("role"),
            action="request",
            path=str(request.url.path),
            method=request.method,
            status=response.status_code,
            ip=request.client.host if request.client else None,
        )
        try:
            create_document(database.db, AUDIT_LOGS, log)
        except PyMongoError as e:
            logger.warning("Audit log write failed for %s %s: %s", request.method, request.url.path, e)
    return response


# -------------------- Meta endpoints -------------------- #

@app.get("/")
def read_root():
    return {"message": f"{config.APP_NAME} is running", "version": config.VERSION}


@app.get("/schema")
def get_schema():
    return {m.__name__: m.model_json_schema() for m in SCHEMA_MODELS}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    db = database.db
    if db is None:
        return response
    response["database"] = "✅ Available"
    response["database_name"] = db.name
    response["connection_status"] = "Connected"
    try:
        response["collections"] = db.list_collection_names()[:50]
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
    return response


# -------------------- Run -------------------- #

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
