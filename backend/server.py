from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from pathlib import Path
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
import os
import logging
import uuid
import sys
import time

ROOT_DIR = Path(__file__).parent
# Ensure imports resolve to backend/* modules even when app is started from repo root.
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
from entity_types import UnknownEntityTypeError, edit_path, get_entity_spec
from duplication_service import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TIMEOUT_SECONDS,
    DuplicationResult,
    FailureKind,
    RecordDuplicator,
    success_message,
)
load_dotenv(ROOT_DIR / ".env")

mongo_url = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get("DB_NAME", "tuition_management")]

APP_API_BASE_URL = os.environ.get("APP_API_BASE_URL", "http://localhost:3000").rstrip("/")
DUPLICATE_MAX_ATTEMPTS = int(os.environ.get("DUPLICATE_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS)))
DUPLICATE_TIMEOUT_SECONDS = float(
    os.environ.get("DUPLICATE_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))
)
AUTH_COOKIE_NAME = os.environ.get("AUTH_COOKIE_NAME", "token")


def check_duplicate_settings(max_attempts: int, timeout_seconds: float) -> None:
    if max_attempts < 1:
        raise RuntimeError("DUPLICATE_MAX_ATTEMPTS must be at least 1")
    if timeout_seconds <= 0:
        raise RuntimeError("DUPLICATE_TIMEOUT_SECONDS must be greater than 0")


check_duplicate_settings(DUPLICATE_MAX_ATTEMPTS, DUPLICATE_TIMEOUT_SECONDS)

FAILURE_STATUS_CODES = {
    FailureKind.EMAIL_CONFLICT: 409,
    FailureKind.VALIDATION: 400,
    FailureKind.REJECTED: 400,
    FailureKind.TRANSPORT: 502,
    FailureKind.UNKNOWN: 502,
}

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Tuition Duplication API")
api_router = APIRouter(prefix="/api")


class DuplicateRecordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entity_type: str = Field(alias="entityType", min_length=1)
    record: Dict[str, Any]
    overrides: Optional[Dict[str, Any]] = None


class DuplicateByIdRequest(BaseModel):
    overrides: Optional[Dict[str, Any]] = None


def extract_auth_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or ""
    scheme, _, credentials = auth_header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(AUTH_COOKIE_NAME) or None


def get_duplicator(request: Request) -> RecordDuplicator:
    return RecordDuplicator(
        base_url=APP_API_BASE_URL,
        auth_token=extract_auth_token(request),
        max_attempts=DUPLICATE_MAX_ATTEMPTS,
        timeout_seconds=DUPLICATE_TIMEOUT_SECONDS,
    )


def get_database():
    return db


def record_id_filter(record_id: str) -> Dict[str, Any]:
    if ObjectId.is_valid(record_id):
        return {"_id": {"$in": [ObjectId(record_id), record_id]}}
    return {"_id": record_id}


def resolve_spec_or_400(entity_type: str):
    try:
        return get_entity_spec(entity_type)
    except UnknownEntityTypeError as e:
        raise HTTPException(status_code=400, detail=str(e))


def build_duplicate_response(result: DuplicationResult, entity_type: str) -> JSONResponse:
    if result.ok:
        created = result.record
        record_id = created.get("_id")
        return JSONResponse(
            status_code=201,
            content={
                "success": True,
                "data": created,
                "message": success_message(created, entity_type),
                "editPath": edit_path(entity_type, record_id) if record_id else None,
                "attempts": result.attempts,
            },
        )
    status_code = FAILURE_STATUS_CODES.get(result.failure, 502)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": result.error, "attempts": result.attempts},
    )


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception(
            "request_id=%s method=%s path=%s status=500 duration_ms=%s error=%s",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
            str(e),
        )
        raise
    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_id=%s method=%s path=%s status=%s duration_ms=%s",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(
        "HTTPException request_id=%s path=%s status=%s detail=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.status_code,
        exc.detail,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    logger.exception("Unhandled server error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "Tuition Duplication API"}


@api_router.post("/duplicate")
async def duplicate_record(
    payload: DuplicateRecordRequest,
    duplicator: RecordDuplicator = Depends(get_duplicator),
):
    spec = resolve_spec_or_400(payload.entity_type)
    result = await duplicator.duplicate(payload.record, spec.entity_type, payload.overrides)
    return build_duplicate_response(result, spec.entity_type)


@api_router.post("/duplicate/{entity_type}/{record_id}")
async def duplicate_stored_record(
    entity_type: str,
    record_id: str,
    payload: Optional[DuplicateByIdRequest] = None,
    duplicator: RecordDuplicator = Depends(get_duplicator),
    database=Depends(get_database),
):
    spec = resolve_spec_or_400(entity_type)
    source = await database[spec.collection].find_one(record_id_filter(record_id))
    if not source:
        raise HTTPException(status_code=404, detail=f"{spec.label} not found")
    overrides = payload.overrides if payload else None
    result = await duplicator.duplicate(source, spec.entity_type, overrides)
    return build_duplicate_response(result, spec.entity_type)


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()


app.include_router(api_router)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)
