import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

import httpx

from entity_types import (
    EntitySpec,
    EntityType,
    UnknownEntityTypeError,
    get_entity_spec,
    lookup_entity_type,
    record_label,
)
from record_sanitizer import build_attempt_payload

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_TIMEOUT_SECONDS = 5.0
EMAIL_CONFLICT_CODE = "EMAIL_EXISTS"
EMAIL_CONFLICT_MESSAGE = "email already exists"


class FailureKind(str, Enum):
    EMAIL_CONFLICT = "email_conflict"
    VALIDATION = "validation"
    REJECTED = "rejected"
    TRANSPORT = "transport"
    UNKNOWN = "unknown"


@dataclass
class DuplicationResult:
    record: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    failure: Optional[FailureKind] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.record is not None


def generic_failure_message(entity_type: Union[str, EntityType, None]) -> str:
    resolved = lookup_entity_type(entity_type)
    label = get_entity_spec(resolved).label if resolved else str(entity_type or "record")
    return f"Failed to duplicate {label.lower()}. Please try again."


def _field_errors(payload: Dict[str, Any]) -> Any:
    # Insurance payment and claim endpoints report field errors under "errors".
    for key in ("details", "errors"):
        value = payload.get(key)
        if value:
            return value
    return None


def format_error_message(payload: Any, fallback: str) -> str:
    if not isinstance(payload, dict):
        return fallback
    field_errors = _field_errors(payload)
    if isinstance(field_errors, dict):
        parts = []
        for field, message in field_errors.items():
            if isinstance(message, (list, tuple)):
                message = ", ".join(str(m) for m in message)
            parts.append(f"{field}: {message}")
        if parts:
            return "; ".join(parts)
    if isinstance(field_errors, (list, tuple)):
        return "; ".join(str(item) for item in field_errors)
    error = payload.get("error") or payload.get("detail")
    if isinstance(error, str) and error.strip():
        return error.strip()
    return fallback


def is_email_conflict(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    if payload.get("code") == EMAIL_CONFLICT_CODE:
        return True
    error = payload.get("error")
    return isinstance(error, str) and " ".join(error.split()).lower() == EMAIL_CONFLICT_MESSAGE


def classify_failure(status_code: int, payload: Any) -> FailureKind:
    if is_email_conflict(payload):
        return FailureKind.EMAIL_CONFLICT
    if not isinstance(payload, dict) or status_code >= 500:
        return FailureKind.UNKNOWN
    if _field_errors(payload):
        return FailureKind.VALIDATION
    if 400 <= status_code < 500 or payload.get("success") is False:
        return FailureKind.REJECTED
    return FailureKind.UNKNOWN


def _created_record(status_code: int, payload: Any) -> Optional[Dict[str, Any]]:
    if not 200 <= status_code < 300 or not isinstance(payload, dict):
        return None
    if payload.get("success") is False:
        return None
    data = payload.get("data")
    return data if isinstance(data, dict) else None


class RecordDuplicator:
    """Creates a copy of an existing record through the application's REST
    creation endpoint.

    Only an email-uniqueness conflict is retried, with a fresh ``_copyN``
    email each time and at most ``max_attempts`` create calls. Every other
    failure is returned to the caller straight away.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout_seconds,
            transport=self.transport,
        )

    async def duplicate(
        self,
        record: Dict[str, Any],
        entity_type: Union[str, EntityType],
        overrides: Optional[Dict[str, Any]] = None,
    ) -> DuplicationResult:
        try:
            spec = get_entity_spec(entity_type)
        except UnknownEntityTypeError as exc:
            logger.warning("duplicate_rejected entity_type=%r error=%s", entity_type, exc)
            return DuplicationResult(error=str(exc), failure=FailureKind.REJECTED)

        fallback = generic_failure_message(spec.entity_type)
        result = DuplicationResult()
        attempt = 0
        async with self._client() as client:
            while attempt < self.max_attempts:
                payload, next_attempt = build_attempt_payload(
                    record, spec.entity_type, attempt, overrides
                )
                result.attempts = next_attempt
                try:
                    response = await client.post(spec.endpoint, json=payload)
                except httpx.HTTPError as exc:
                    logger.warning(
                        "duplicate_transport_error entity_type=%s attempt=%s/%s error=%s",
                        spec.entity_type.value,
                        next_attempt,
                        self.max_attempts,
                        exc,
                    )
                    result.error = fallback
                    result.failure = FailureKind.TRANSPORT
                    return result

                try:
                    body = response.json()
                except ValueError:
                    body = None

                created = _created_record(response.status_code, body)
                if created is not None:
                    logger.info(
                        "duplicate_created entity_type=%s attempts=%s id=%s",
                        spec.entity_type.value,
                        next_attempt,
                        created.get("_id"),
                    )
                    return DuplicationResult(record=created, attempts=next_attempt)

                kind = classify_failure(response.status_code, body)
                result.error = format_error_message(body, fallback)
                result.failure = kind
                # A forced email is resent unchanged, so retrying cannot help.
                email_forced = bool(overrides) and "email" in overrides
                if kind != FailureKind.EMAIL_CONFLICT or email_forced:
                    logger.warning(
                        "duplicate_failed entity_type=%s attempt=%s status=%s kind=%s error=%s",
                        spec.entity_type.value,
                        next_attempt,
                        response.status_code,
                        kind.value,
                        result.error,
                    )
                    return result

                logger.warning(
                    "duplicate_email_conflict entity_type=%s attempt=%s/%s email=%s",
                    spec.entity_type.value,
                    next_attempt,
                    self.max_attempts,
                    payload.get("email"),
                )
                attempt = next_attempt

        logger.warning(
            "duplicate_attempts_exhausted entity_type=%s attempts=%s",
            spec.entity_type.value,
            result.attempts,
        )
        return result

    async def _load_source(
        self, spec: EntitySpec, record_id: str
    ) -> Tuple[Optional[Dict[str, Any]], Optional[DuplicationResult]]:
        fallback = generic_failure_message(spec.entity_type)
        not_found = DuplicationResult(
            error=f"{spec.label} {record_id} not found",
            failure=FailureKind.REJECTED,
        )
        async with self._client() as client:
            try:
                response = await client.get(f"{spec.endpoint}/{record_id}")
            except httpx.HTTPError as exc:
                logger.warning(
                    "fetch_record_transport_error entity_type=%s id=%s error=%s",
                    spec.entity_type.value,
                    record_id,
                    exc,
                )
                return None, DuplicationResult(error=fallback, failure=FailureKind.TRANSPORT)

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code == 404:
            return None, not_found
        if 200 <= response.status_code < 300:
            data = body.get("data") if isinstance(body, dict) else None
            if isinstance(data, dict):
                return data, None
            return None, not_found

        kind = classify_failure(response.status_code, body)
        error = format_error_message(body, fallback)
        logger.warning(
            "fetch_record_failed entity_type=%s id=%s status=%s kind=%s error=%s",
            spec.entity_type.value,
            record_id,
            response.status_code,
            kind.value,
            error,
        )
        return None, DuplicationResult(error=error, failure=kind)

    async def fetch_record(
        self, entity_type: Union[str, EntityType], record_id: str
    ) -> Optional[Dict[str, Any]]:
        source, _ = await self._load_source(get_entity_spec(entity_type), record_id)
        return source

    async def duplicate_by_id(
        self,
        entity_type: Union[str, EntityType],
        record_id: str,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> DuplicationResult:
        try:
            spec = get_entity_spec(entity_type)
        except UnknownEntityTypeError as exc:
            return DuplicationResult(error=str(exc), failure=FailureKind.REJECTED)
        source, failure = await self._load_source(spec, record_id)
        if failure is not None:
            return failure
        return await self.duplicate(source, spec.entity_type, overrides)


def success_message(record: Dict[str, Any], entity_type: Union[str, EntityType]) -> str:
    spec = get_entity_spec(entity_type)
    return f"{spec.label} {record_label(record, spec.entity_type)} duplicated successfully!"
