import copy
import logging
import re
from datetime import date, datetime
from typing import Any, Dict, Optional, Tuple, Union

from bson import ObjectId

from entity_types import ENTITY_SPECS, EntityType, lookup_entity_type

logger = logging.getLogger(__name__)

IDENTITY_FIELDS = ("_id",)
AUDIT_FIELDS = ("createdAt", "updatedAt", "createdBy", "updatedBy")
COPY_MARKER = " (Copy)"

_COPY_SUFFIX_RE = re.compile(r"_copy\d*$")


def copy_email(email: str, attempt_number: int = 0) -> str:
    """Return ``local_copy@domain`` (attempt 0) or ``local_copyN@domain``.

    Any ``_copy``/``_copyN`` suffix already on the local part is stripped
    first so suffixes never stack. Values without an ``@`` are returned as-is.
    """
    local, sep, domain = email.rpartition("@")
    if not sep or not local:
        return email
    base = _COPY_SUFFIX_RE.sub("", local)
    suffix = "_copy" if attempt_number <= 0 else f"_copy{attempt_number}"
    return f"{base}{suffix}@{domain}"


def _append_marker(record: Dict[str, Any], field: str) -> None:
    value = record.get(field)
    if value:
        record[field] = f"{value}{COPY_MARKER}"


def sanitize(record: Dict[str, Any], entity_type: Union[str, EntityType, None]) -> Dict[str, Any]:
    candidate = copy.deepcopy(dict(record))
    for field in IDENTITY_FIELDS + AUDIT_FIELDS:
        candidate.pop(field, None)

    resolved = lookup_entity_type(entity_type)
    if resolved is None:
        logger.warning("sanitize_unknown_entity_type entity_type=%r using generic rule", entity_type)
        _append_marker(candidate, "name")
        _append_marker(candidate, "title")
    else:
        spec = ENTITY_SPECS[resolved]
        for field in spec.copy_fields:
            _append_marker(candidate, field)
        for field in spec.generated_fields + spec.cleared_fields:
            candidate.pop(field, None)

    email = candidate.get("email")
    if isinstance(email, str) and email.strip():
        candidate["email"] = copy_email(email.strip())
    return candidate


def to_jsonable(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def build_attempt_payload(
    record: Dict[str, Any],
    entity_type: Union[str, EntityType, None],
    attempt_number: int,
    overrides: Optional[Dict[str, Any]] = None,
) -> Tuple[Dict[str, Any], int]:
    """Build the create payload for one attempt and return it with the next
    attempt number.

    Always starts again from the source record, so the email suffix for
    attempt N replaces the one from attempt N-1 instead of extending it.
    Overrides are applied last and are sent exactly as given, email included.
    """
    payload = sanitize(record, entity_type)
    email = payload.get("email")
    if attempt_number > 0 and isinstance(email, str) and email.strip():
        payload["email"] = copy_email(email.strip(), attempt_number)
    if overrides:
        payload.update(copy.deepcopy(overrides))
    return to_jsonable(payload), attempt_number + 1
