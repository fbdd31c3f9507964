"""
Patient records – validation, search, sorting, filtering and lifecycle.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select

from optica.config import (
    DEFAULT_PATIENT_SORT, DEFAULT_PER_PAGE, DNI_LENGTH,
    NAME_MAX_LENGTH, NAME_MIN_LENGTH, PHONE_MAX_LENGTH, PHONE_MIN_LENGTH,
    RECENT_PATIENTS_COUNT,
)
from optica.database import paginate, transaction
from optica.errors import ConflictError, ValidationError
from optica.fields import is_valid_email, parse_attributes, to_bool, to_date, to_str
from optica.models import Patient, User

PATIENT_CONVERTERS = {
    "first_name": to_str,
    "last_name": to_str,
    "dni": to_str,
    "email": to_str,
    "phone": to_str,
    "address": to_str,
    "city": to_str,
    "state": to_str,
    "zip_code": to_str,
    "birth_date": to_date,
    "emergency_contact": to_str,
    "emergency_phone": to_str,
    "insurance_provider": to_str,
    "insurance_number": to_str,
    "active": to_bool,
    "notes": to_str,
}

SEARCH_COLUMNS = (
    Patient.first_name, Patient.last_name, Patient.email, Patient.phone, Patient.dni,
)


# ── Validation ───────────────────────────────────────────────────────

def _validate(values: Dict[str, Any], errors: List[str]) -> None:
    for field in ("first_name", "last_name"):
        value = values.get(field)
        label = field.replace("_", " ").capitalize()
        if not value:
            errors.append(f"{label} can't be blank")
        elif not NAME_MIN_LENGTH <= len(value) <= NAME_MAX_LENGTH:
            errors.append(
                f"{label} must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters"
            )

    phone = values.get("phone")
    if not phone:
        errors.append("Phone can't be blank")
    elif not PHONE_MIN_LENGTH <= len(phone) <= PHONE_MAX_LENGTH:
        errors.append(
            f"Phone must be between {PHONE_MIN_LENGTH} and {PHONE_MAX_LENGTH} characters"
        )

    dni = values.get("dni")
    if not dni:
        errors.append("DNI can't be blank")
    elif not (dni.isdigit() and len(dni) == DNI_LENGTH):
        errors.append(f"DNI must be exactly {DNI_LENGTH} digits")

    email = values.get("email")
    if email and not is_valid_email(email):
        errors.append("Email is invalid")

    if values.get("active") is None:
        values["active"] = True


def _check_dni_available(session, dni: str, exclude_id: Optional[int] = None) -> None:
    stmt = select(Patient.id).where(Patient.dni == dni)
    if exclude_id is not None:
        stmt = stmt.where(Patient.id != exclude_id)
    if session.execute(stmt).first() is not None:
        raise ConflictError(["DNI has already been taken"])


def _current_values(patient: Patient) -> Dict[str, Any]:
    return {key: getattr(patient, key) for key in PATIENT_CONVERTERS}


# ── Lifecycle ────────────────────────────────────────────────────────

def create_patient(session, owner: User, attrs: Dict[str, Any]) -> Patient:
    """Validate *attrs* and persist a new patient owned by *owner*."""
    errors: List[str] = []
    values = parse_attributes(attrs, PATIENT_CONVERTERS, errors)
    _validate(values, errors)
    if errors:
        raise ValidationError(errors)
    _check_dni_available(session, values["dni"])

    patient = Patient(user=owner, **values)
    with transaction(session):
        session.add(patient)
    return patient


def update_patient(session, patient: Patient, attrs: Dict[str, Any]) -> Patient:
    """Partial update; the merged record must still pass validation."""
    errors: List[str] = []
    changes = parse_attributes(attrs, PATIENT_CONVERTERS, errors)
    merged = _current_values(patient)
    merged.update(changes)
    _validate(merged, errors)
    if errors:
        raise ValidationError(errors)
    if "dni" in changes and changes["dni"] != patient.dni:
        _check_dni_available(session, changes["dni"], exclude_id=patient.id)

    with transaction(session):
        for key, value in changes.items():
            setattr(patient, key, merged[key])
    return patient


def delete_patient(session, patient: Patient) -> None:
    """Hard delete; prescriptions and their sub-records go with it."""
    with transaction(session):
        session.delete(patient)


def toggle_active(session, patient: Patient) -> Patient:
    with transaction(session):
        patient.active = not patient.active
    return patient


# ── Query building ───────────────────────────────────────────────────

def apply_search(stmt, term: Optional[str]):
    """Case-insensitive substring match; a blank term leaves *stmt* as is."""
    if term is None or not term.strip():
        return stmt
    needle = term.strip().lower()
    return stmt.where(or_(*[
        func.lower(column).contains(needle, autoescape=True) for column in SEARCH_COLUMNS
    ]))


def apply_filters(stmt, city: Optional[str] = None, state: Optional[str] = None,
                  status: Optional[str] = None):
    if city:
        stmt = stmt.where(Patient.city == city)
    if state:
        stmt = stmt.where(Patient.state == state)
    if status == "active":
        stmt = stmt.where(Patient.active.is_(True))
    elif status == "inactive":
        stmt = stmt.where(Patient.active.is_(False))
    return stmt


def sort_clauses(option: Optional[str]) -> list:
    """ORDER BY clauses for a sort option; unknown options mean name_asc."""
    orderings = {
        "name_asc": [Patient.first_name.asc(), Patient.last_name.asc()],
        "name_desc": [Patient.first_name.desc(), Patient.last_name.desc()],
        "email_asc": [Patient.email.asc()],
        "email_desc": [Patient.email.desc()],
        "created_asc": [Patient.created_at.asc()],
        "created_desc": [Patient.created_at.desc()],
        "age_asc": [Patient.birth_date.is_(None), Patient.birth_date.asc()],
        "age_desc": [Patient.birth_date.is_(None), Patient.birth_date.desc()],
    }
    clauses = orderings.get(option) or orderings[DEFAULT_PATIENT_SORT]
    return clauses + [Patient.id.asc()]


def owned_by(owner: User):
    return select(Patient).where(Patient.user_id == owner.id)


def search_patients(session, owner: User, term: Optional[str] = None,
                    sort: Optional[str] = None) -> List[Patient]:
    stmt = apply_search(owned_by(owner), term).order_by(*sort_clauses(sort))
    return list(session.execute(stmt).scalars())


def _distinct_values(session, owner: User, column) -> List[str]:
    stmt = (
        select(column).where(Patient.user_id == owner.id, column.is_not(None))
        .distinct().order_by(column)
    )
    return [value for value in session.execute(stmt).scalars() if value]


def list_patients(session, owner: User, search: Optional[str] = None,
                  city: Optional[str] = None, state: Optional[str] = None,
                  status: Optional[str] = None, sort: Optional[str] = None,
                  page: int = 1, per_page: int = DEFAULT_PER_PAGE) -> Dict[str, Any]:
    """The owner's patients, filtered, sorted and paginated, plus filter choices."""
    stmt = apply_search(owned_by(owner), search)
    stmt = apply_filters(stmt, city=city, state=state, status=status)
    stmt = stmt.order_by(*sort_clauses(sort))
    patients, pagination = paginate(session, stmt, page, per_page)
    return {
        "patients": patients,
        "pagination": pagination,
        "filters": {
            "cities": _distinct_values(session, owner, Patient.city),
            "states": _distinct_values(session, owner, Patient.state),
        },
    }


def dashboard_stats(session, owner: User) -> Dict[str, Any]:
    def count(stmt):
        return session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()

    base = owned_by(owner)
    recent = session.execute(
        base.order_by(Patient.created_at.desc(), Patient.id.desc()).limit(RECENT_PATIENTS_COUNT)
    ).scalars()
    return {
        "total_patients": count(base),
        "active_patients": count(apply_filters(base, status="active")),
        "inactive_patients": count(apply_filters(base, status="inactive")),
        "recent_patients": list(recent),
    }


def lookup_patients(session, owner: User, term: Optional[str], limit: int) -> List[Dict[str, Any]]:
    """Compact name/DNI matches for the prescription patient picker."""
    if term is None or not term.strip():
        return []
    stmt = apply_search(owned_by(owner), term).order_by(*sort_clauses("name_asc")).limit(limit)
    results = []
    for patient in session.execute(stmt).scalars():
        display = patient.full_name + (f" (DNI: {patient.dni})" if patient.dni else "")
        results.append({
            "id": patient.id,
            "first_name": patient.first_name,
            "last_name": patient.last_name,
            "dni": patient.dni,
            "display_name": display,
        })
    return results
