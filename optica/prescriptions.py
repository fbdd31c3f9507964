"""
Prescription aggregate – a prescription and its eyes, lenses and frame are
created, updated and deleted as one unit inside a single transaction.

Nested payloads (``prescription_eyes_attributes``, ``lenses_attributes``,
``frame_attributes``) are turned into tagged operations before anything is
touched:

    Keep(id, patch)   update the existing sub-record with that id
    Create(patch)     add a new sub-record (entry without an id)
    Delete(id)        remove the sub-record (entry with a truthy _destroy)

Sub-records missing from the payload are left alone.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select

from optica.config import EYE_TYPES, LENS_EYE_TYPES, PRESCRIPTION_STATUSES
from optica.database import paginate, transaction
from optica.errors import BadRequest, ConflictError, ValidationError
from optica.fields import (
    parse_attributes, to_bool, to_date, to_decimal, to_int, to_str,
)
from optica.models import (
    Frame, Lens, Patient, Prescription, PrescriptionEye, User, normalize_coatings,
)


def to_coatings(value) -> List[str]:
    if value is not None and not isinstance(value, (list, tuple, str)):
        raise ValueError("must be a list of strings")
    return normalize_coatings(value)


PRESCRIPTION_CONVERTERS = {
    "exam_date": to_date,
    "observations": to_str,
    "order_number": to_str,
    "total_cost": to_decimal,
    "deposit_paid": to_decimal,
    "expected_delivery_date": to_date,
    "status": to_str,
    "distance_va_od": to_decimal,
    "distance_va_os": to_decimal,
    "near_va_od": to_decimal,
    "near_va_os": to_decimal,
}

EYE_CONVERTERS = {
    "eye_type": to_str,
    "sphere": to_decimal,
    "cylinder": to_decimal,
    "axis": to_int,
    "add": to_decimal,
    "prism": to_decimal,
    "prism_base": to_str,
    "dnp": to_decimal,
    "npd": to_decimal,
    "height": to_decimal,
    "notes": to_str,
}

# payload key "index" maps to the refractive_index attribute
LENS_CONVERTERS = {
    "eye_type": to_str,
    "lens_type": to_str,
    "material": to_str,
    "coatings": to_coatings,
    "index": to_decimal,
    "tint": to_str,
    "photochromic": to_bool,
    "progressive": to_bool,
    "special_properties": to_str,
    "notes": to_str,
}

FRAME_CONVERTERS = {
    "brand": to_str,
    "model": to_str,
    "material": to_str,
    "color": to_str,
    "style": to_str,
    "frame_width": to_decimal,
    "lens_width": to_decimal,
    "bridge_size": to_decimal,
    "temple_length": to_decimal,
    "frame_cost": to_decimal,
    "special_features": to_str,
    "notes": to_str,
}

MAX_EYES = 2
MAX_LENSES = 2


# ── Nested operations ────────────────────────────────────────────────

@dataclass
class Keep:
    id: int
    patch: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Create:
    patch: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Delete:
    id: int


NestedOp = Union[Keep, Create, Delete]


def _entries(raw, label: str) -> List[Dict[str, Any]]:
    """Accept a list of dicts or a dict of index -> dict."""
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = [raw[key] for key in sorted(raw, key=str)]
    if not isinstance(raw, list) or not all(isinstance(e, dict) for e in raw):
        raise BadRequest(f"{label} must be a list of objects")
    return raw


def parse_nested_ops(entries: List[Dict[str, Any]], converters, errors: List[str],
                     prefix: str) -> List[NestedOp]:
    ops: List[NestedOp] = []
    for entry in entries:
        raw_id = entry.get("id")
        try:
            record_id = to_int(raw_id)
        except ValueError:
            errors.append(f"{prefix}Id is not an integer")
            continue
        try:
            destroy = bool(to_bool(entry.get("_destroy")))
        except ValueError:
            errors.append(f"{prefix}_destroy is not a boolean")
            continue

        if destroy:
            if record_id is not None:
                ops.append(Delete(record_id))
            # destroying an unsaved entry is a no-op
            continue

        patch = parse_attributes(entry, converters, errors, prefix=prefix)
        if record_id is None:
            ops.append(Create(patch))
        else:
            ops.append(Keep(record_id, patch))
    return ops


def apply_nested_ops(collection: list, ops: List[NestedOp], factory, errors: List[str],
                     label: str, assign=None) -> None:
    """Apply *ops* to an ORM collection in place."""
    assign = assign or _assign
    by_id = {item.id: item for item in collection if item.id is not None}
    for op in ops:
        if isinstance(op, Create):
            record = factory()
            assign(record, op.patch)
            collection.append(record)
        elif isinstance(op, Keep):
            record = by_id.get(op.id)
            if record is None:
                errors.append(f"{label} with id {op.id} does not belong to this prescription")
                continue
            assign(record, op.patch)
        elif isinstance(op, Delete):
            record = by_id.get(op.id)
            if record is None:
                errors.append(f"{label} with id {op.id} does not belong to this prescription")
                continue
            collection.remove(record)


def _assign(record, patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        setattr(record, key, value)


def _assign_lens(record: Lens, patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        setattr(record, "refractive_index" if key == "index" else key, value)


# ── Validation ───────────────────────────────────────────────────────

def _validate_eyes(eyes: List[PrescriptionEye], errors: List[str]) -> None:
    seen = set()
    for eye in eyes:
        if not eye.eye_type:
            errors.append("Prescription eye type can't be blank")
        elif eye.eye_type not in EYE_TYPES:
            errors.append(f"Prescription eye type {eye.eye_type} is not a valid eye type")
        elif eye.eye_type in seen:
            errors.append(f"Prescription eye {eye.eye_type} is specified more than once")
        seen.add(eye.eye_type)
        if eye.axis is not None and not 0 <= eye.axis <= 180:
            errors.append("Prescription eye axis must be between 0 and 180")
    if len(eyes) > MAX_EYES:
        errors.append(f"A prescription has at most {MAX_EYES} eye records")


def _validate_lenses(lenses: List[Lens], errors: List[str]) -> None:
    seen = set()
    for lens in lenses:
        if not lens.eye_type:
            errors.append("Lens eye type can't be blank")
        elif lens.eye_type not in LENS_EYE_TYPES:
            errors.append(f"Lens eye type {lens.eye_type} is not a valid eye type")
        elif lens.eye_type in seen:
            errors.append(f"Lens {lens.eye_type} is specified more than once")
        seen.add(lens.eye_type)
    if len(lenses) > MAX_LENSES:
        errors.append(f"A prescription has at most {MAX_LENSES} lenses")
    if "Both" in seen and len(lenses) > 1:
        errors.append("A combined Both lens cannot be mixed with other lenses")


def _validate_top_level(prescription: Prescription, errors: List[str]) -> None:
    if prescription.status not in PRESCRIPTION_STATUSES:
        errors.append(f"Status {prescription.status} is not a valid status")
    for name in ("total_cost", "deposit_paid"):
        value = getattr(prescription, name)
        if value is not None and value < 0:
            errors.append(f"{name.replace('_', ' ').capitalize()} must be greater than or equal to 0")


def _check_order_number(session, prescription: Prescription) -> None:
    if not prescription.order_number:
        return
    stmt = select(Prescription.id).where(Prescription.order_number == prescription.order_number)
    if prescription.id is not None:
        stmt = stmt.where(Prescription.id != prescription.id)
    if session.execute(stmt).first() is not None:
        raise ConflictError(["Order number has already been taken"])


# ── Aggregate writes ─────────────────────────────────────────────────

def _apply_payload(prescription: Prescription, payload: Dict[str, Any], errors: List[str]) -> None:
    top = parse_attributes(payload, PRESCRIPTION_CONVERTERS, errors)
    if "status" in top and top["status"] is None:
        top.pop("status")
    _assign(prescription, top)

    eye_ops = parse_nested_ops(
        _entries(payload.get("prescription_eyes_attributes"), "prescription_eyes_attributes"),
        EYE_CONVERTERS, errors, prefix="Prescription eye ",
    )
    apply_nested_ops(prescription.prescription_eyes, eye_ops, PrescriptionEye, errors, "Prescription eye")

    lens_ops = parse_nested_ops(
        _entries(payload.get("lenses_attributes"), "lenses_attributes"),
        LENS_CONVERTERS, errors, prefix="Lens ",
    )
    apply_nested_ops(prescription.lenses, lens_ops, Lens, errors, "Lens", assign=_assign_lens)

    frame_raw = payload.get("frame_attributes")
    if frame_raw is not None:
        if not isinstance(frame_raw, dict):
            raise BadRequest("frame_attributes must be an object")
        _apply_frame(prescription, frame_raw, errors)

    _validate_top_level(prescription, errors)
    _validate_eyes(prescription.prescription_eyes, errors)
    _validate_lenses(prescription.lenses, errors)


def _apply_frame(prescription: Prescription, raw: Dict[str, Any], errors: List[str]) -> None:
    """At most one frame: an entry without id updates the existing frame if any."""
    ops = parse_nested_ops([raw], FRAME_CONVERTERS, errors, prefix="Frame ")
    if not ops:
        return
    op = ops[0]
    current = prescription.frame
    if isinstance(op, Create) and current is not None:
        op = Keep(current.id, op.patch)

    if isinstance(op, Create):
        frame = Frame()
        _assign(frame, op.patch)
        prescription.frame = frame
    elif current is None or current.id != op.id:
        errors.append(f"Frame with id {op.id} does not belong to this prescription")
    elif isinstance(op, Keep):
        _assign(current, op.patch)
    else:
        prescription.frame = None


def create_prescription(session, patient: Patient, author: User,
                        payload: Dict[str, Any]) -> Prescription:
    """Build the whole aggregate; nothing is persisted unless all of it is valid."""
    prescription = Prescription(status="pending")
    errors: List[str] = []
    with transaction(session):
        _apply_payload(prescription, payload, errors)
        if errors:
            raise ValidationError(errors)
        _check_order_number(session, prescription)
        prescription.patient = patient
        prescription.user = author
        session.add(prescription)
    return prescription


def update_prescription(session, prescription: Prescription,
                        payload: Dict[str, Any]) -> Prescription:
    errors: List[str] = []
    with transaction(session):
        _apply_payload(prescription, payload, errors)
        if errors:
            raise ValidationError(errors)
        _check_order_number(session, prescription)
    return prescription


def delete_prescription(session, prescription: Prescription) -> None:
    with transaction(session):
        session.delete(prescription)


# ── Reads ────────────────────────────────────────────────────────────

def list_for_patient(session, patient: Patient) -> List[Prescription]:
    """Most recent exam first; prescriptions without an exam date last."""
    stmt = (
        select(Prescription)
        .where(Prescription.patient_id == patient.id)
        .order_by(
            Prescription.exam_date.is_(None),
            Prescription.exam_date.desc(),
            Prescription.id.desc(),
        )
    )
    return list(session.execute(stmt).scalars())


def list_all(session, owner: User, page: int = 1, per_page: Optional[int] = None,
             status: Optional[str] = None, patient_id: Optional[int] = None):
    """Prescriptions of every patient *owner* owns, newest first, paginated."""
    stmt = (
        select(Prescription)
        .join(Patient, Prescription.patient_id == Patient.id)
        .where(Patient.user_id == owner.id)
    )
    if status:
        if status not in PRESCRIPTION_STATUSES:
            raise BadRequest("Invalid status parameter")
        stmt = stmt.where(Prescription.status == status)
    if patient_id is not None:
        stmt = stmt.where(Prescription.patient_id == patient_id)
    stmt = stmt.order_by(Prescription.created_at.desc(), Prescription.id.desc())
    return paginate(session, stmt, page, per_page)


def count_for_owner(session, owner: User) -> int:
    stmt = (
        select(func.count(Prescription.id))
        .join(Patient, Prescription.patient_id == Patient.id)
        .where(Patient.user_id == owner.id)
    )
    return session.execute(stmt).scalar_one()
