"""
Authorization gate – every role and ownership decision lives here.

Checks are applied after token validation, so an unauthenticated caller
never reaches them and cannot learn whether a resource exists.
"""

from optica.errors import Forbidden, NotFound, Unauthorized
from optica.models import Patient, Prescription, User


def require_actor(actor):
    if actor is None:
        raise Unauthorized()
    return actor


def require_admin(actor: User) -> User:
    """User management is admin-only."""
    require_actor(actor)
    if not actor.is_admin():
        raise Forbidden("You don't have permission to perform this action. Admin access required.")
    return actor


def authorize_patient(actor: User, patient: Patient) -> Patient:
    """Read and write access to a patient is limited to its owner."""
    require_actor(actor)
    if patient.user_id != actor.id:
        raise Forbidden("You don't have access to this patient")
    return patient


def authorize_prescription(actor: User, prescription: Prescription) -> Prescription:
    """Ownership is transitive through the patient, not the author field."""
    require_actor(actor)
    if prescription.patient is None or prescription.patient.user_id != actor.id:
        raise Forbidden("You don't have access to this prescription")
    return prescription


def authorize_user_deletion(actor: User, target: User) -> User:
    """Admins may delete other accounts but never their own."""
    require_admin(actor)
    if target.id == actor.id:
        raise Forbidden("You cannot delete your own account")
    return target


# ── Load-then-authorize helpers ──────────────────────────────────────

def load_patient(session, actor: User, patient_id: int) -> Patient:
    patient = session.get(Patient, patient_id)
    if patient is None:
        raise NotFound("Patient not found")
    return authorize_patient(actor, patient)


def load_prescription(session, actor: User, prescription_id: int) -> Prescription:
    prescription = session.get(Prescription, prescription_id)
    if prescription is None:
        raise NotFound("Prescription not found")
    return authorize_prescription(actor, prescription)
