import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class UnknownEntityTypeError(ValueError):
    pass


class EntityType(str, Enum):
    STUDENT = "Student"
    TEACHER = "Teacher"
    CUSTOMER = "Customer"
    TRANSPORT_CUSTOMER = "TransportCustomer"
    USER = "User"
    FEE = "Fee"
    INSURER = "Insurer"
    POLICY = "Policy"
    CUSTOMER_POLICY = "CustomerPolicy"
    POLICY_PAYMENT = "PolicyPayment"
    CLAIM = "Claim"


@dataclass(frozen=True)
class EntitySpec:
    """Where a record kind lives and which of its fields a copy must not keep."""

    entity_type: EntityType
    label: str
    resource: str
    collection: str
    copy_fields: Tuple[str, ...] = ()
    generated_fields: Tuple[str, ...] = ()
    cleared_fields: Tuple[str, ...] = ()

    @property
    def endpoint(self) -> str:
        return f"/api/{self.resource}"


ENTITY_SPECS: Dict[EntityType, EntitySpec] = {
    EntityType.STUDENT: EntitySpec(
        EntityType.STUDENT,
        label="Student",
        resource="students",
        collection="students",
        copy_fields=("firstName",),
        generated_fields=("studentCode",),
    ),
    EntityType.TEACHER: EntitySpec(
        EntityType.TEACHER,
        label="Teacher",
        resource="teachers",
        collection="teachers",
        copy_fields=("firstName", "name"),
        generated_fields=("teacherCode",),
    ),
    EntityType.CUSTOMER: EntitySpec(
        EntityType.CUSTOMER,
        label="Customer",
        resource="customers",
        collection="customers",
        copy_fields=("name",),
    ),
    EntityType.TRANSPORT_CUSTOMER: EntitySpec(
        EntityType.TRANSPORT_CUSTOMER,
        label="Transport Customer",
        resource="transport-customers",
        collection="transport_customers",
        copy_fields=("name",),
    ),
    EntityType.USER: EntitySpec(
        EntityType.USER,
        label="User",
        resource="users",
        collection="users",
        copy_fields=("name",),
        cleared_fields=("passwordHash", "lastLoginAt"),
    ),
    EntityType.FEE: EntitySpec(
        EntityType.FEE,
        label="Fee",
        resource="fees",
        collection="fees",
        copy_fields=("reference",),
        generated_fields=("transactionId",),
    ),
    EntityType.INSURER: EntitySpec(
        EntityType.INSURER,
        label="Insurer",
        resource="insurers",
        collection="insurers",
        copy_fields=("name",),
        generated_fields=("code",),
    ),
    EntityType.POLICY: EntitySpec(
        EntityType.POLICY,
        label="Policy",
        resource="policies",
        collection="policies",
        copy_fields=("name",),
        generated_fields=("code",),
    ),
    # The business key doubles as the display name for these three, so the
    # key is dropped and no copy marker is applied.
    EntityType.CUSTOMER_POLICY: EntitySpec(
        EntityType.CUSTOMER_POLICY,
        label="Customer Policy",
        resource="customer-policies",
        collection="customer_policies",
        generated_fields=("policyNumber",),
    ),
    EntityType.POLICY_PAYMENT: EntitySpec(
        EntityType.POLICY_PAYMENT,
        label="Policy Payment",
        resource="policy-payments",
        collection="policy_payments",
        generated_fields=("transactionId",),
    ),
    EntityType.CLAIM: EntitySpec(
        EntityType.CLAIM,
        label="Claim",
        resource="claims",
        collection="claims",
        generated_fields=("claimNumber",),
    ),
}

# Business key shown in place of a name for records that have no name field.
_LABEL_KEYS: Dict[EntityType, str] = {
    EntityType.FEE: "transactionId",
    EntityType.CUSTOMER_POLICY: "policyNumber",
    EntityType.POLICY_PAYMENT: "transactionId",
    EntityType.CLAIM: "claimNumber",
}

_TAG_SEPARATORS = re.compile(r"[\s_-]+")


def _tag_key(tag: str) -> str:
    return _TAG_SEPARATORS.sub("", tag).lower()


_TAG_INDEX: Dict[str, EntityType] = {}
for _spec in ENTITY_SPECS.values():
    _TAG_INDEX[_tag_key(_spec.entity_type.value)] = _spec.entity_type
    _TAG_INDEX[_tag_key(_spec.label)] = _spec.entity_type
    _TAG_INDEX[_tag_key(_spec.resource)] = _spec.entity_type


def lookup_entity_type(tag: Union[str, EntityType, None]) -> Optional[EntityType]:
    if isinstance(tag, EntityType):
        return tag
    if not isinstance(tag, str) or not tag.strip():
        return None
    return _TAG_INDEX.get(_tag_key(tag))


def resolve_entity_type(tag: Union[str, EntityType, None]) -> EntityType:
    """Map a tag such as ``"CustomerPolicy"``, ``"Transport Customer"`` or
    ``"policy-payments"`` to its EntityType.

    Raises UnknownEntityTypeError for anything not in the registry.
    """
    entity_type = lookup_entity_type(tag)
    if entity_type is None:
        raise UnknownEntityTypeError(f"Unknown entity type: {tag!r}")
    return entity_type


def get_entity_spec(tag: Union[str, EntityType]) -> EntitySpec:
    return ENTITY_SPECS[resolve_entity_type(tag)]


def endpoint_for(tag: Union[str, EntityType]) -> str:
    return get_entity_spec(tag).endpoint


def edit_path(tag: Union[str, EntityType], record_id: Any) -> str:
    return f"/{get_entity_spec(tag).resource}/{record_id}/edit"


def record_label(record: Dict[str, Any], tag: Union[str, EntityType, None]) -> str:
    entity_type = lookup_entity_type(tag)
    if entity_type in (EntityType.STUDENT, EntityType.TEACHER):
        parts = [str(record.get(f) or "").strip() for f in ("firstName", "lastName")]
        full_name = " ".join(p for p in parts if p)
        if full_name:
            return full_name
    elif entity_type in _LABEL_KEYS:
        key_value = record.get(_LABEL_KEYS[entity_type])
        if key_value:
            return str(key_value)
    return str(record.get("name") or record.get("title") or "Record")
