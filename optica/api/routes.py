"""
Flask route handlers for the REST API.
"""

import sys
import traceback

from flask import jsonify, request
from sqlalchemy import text

from optica import identity, patients as patient_service, prescriptions as prescription_service
from optica.audit import log_security_event
from optica.authz import authorize_user_deletion, load_patient, load_prescription
from optica.config import API_VERSION, DEFAULT_PER_PAGE, DEFAULT_SEARCH_LIMIT, MAX_PER_PAGE
from optica.errors import (
    AppError, BadRequest, Forbidden, InvalidCredentials, Unauthorized, ValidationError,
)
from optica.api.auth import admin_required, token_required

API = "/api/v1"


def _json_body(key=None, required=True):
    """The JSON object sent by the client, unwrapped from ``{key: {...}}``."""
    data = request.get_json(silent=True)
    if data is None:
        if required:
            raise BadRequest("Content-Type must be application/json")
        return {}
    if not isinstance(data, dict):
        raise BadRequest("Request body must be a JSON object")
    if key and isinstance(data.get(key), dict):
        return data[key]
    return data


def _status(code, message, data=None):
    body = {"status": {"code": code, "message": message}}
    if data is not None:
        body["data"] = data
    return jsonify(body), code


def _page_args():
    page = request.args.get("page", 1, type=int)
    per_page = request.args.get("per_page", DEFAULT_PER_PAGE, type=int)
    return page, per_page


def register_routes(app, db_session):
    """Register all API routes on the Flask *app*."""

    # ── Health / info ────────────────────────────────────────────────

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({
            "service": "Optica Manager API",
            "version": API_VERSION,
            "status": "running",
            "endpoints": {
                "sign_in": f"{API}/users/sign_in",
                "patients": f"{API}/patients",
                "prescriptions": f"{API}/prescriptions/all",
                "users": f"{API}/users",
                "health": "/health",
            },
        })

    @app.route("/health", methods=["GET"])
    def health():
        checks = {"database": False}
        try:
            db_session.execute(text("SELECT 1"))
            checks["database"] = True
        except Exception as e:
            print(f"[WARN] Health check DB error: {e}", file=sys.stderr)
            db_session.rollback()

        all_healthy = all(checks.values())
        return jsonify({
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
            "registration_mode": app.config["REGISTRATION_MODE"],
        }), 200 if all_healthy else 503

    # ── Sessions ─────────────────────────────────────────────────────

    @app.route(f"{API}/users/sign_in", methods=["POST"])
    def sign_in():
        data = _json_body("user")
        email = str(data.get("email") or "").strip()
        password = str(data.get("password") or "")

        try:
            user = identity.authenticate(db_session, email, password)
        except InvalidCredentials:
            log_security_event("failed_login", email=email)
            raise

        token = identity.issue_token(user, app.config["SECRET_KEY"])
        response, code = _status(200, "Logged in successfully.", {
            "user": user.to_dict(),
            "token": token,
        })
        response.headers["Authorization"] = f"Bearer {token}"
        return response, code

    @app.route(f"{API}/users/sign_out", methods=["DELETE"])
    @token_required
    def sign_out():
        identity.revoke(db_session, request.current_user)
        log_security_event("logout", actor=request.current_user)
        return _status(200, "Logged out successfully.")

    @app.route(f"{API}/users/signup", methods=["POST"])
    def sign_up():
        if app.config["REGISTRATION_MODE"] != "open":
            raise Forbidden("Self-registration is disabled. Ask an administrator for an account.")

        data = _json_body("user")
        password = data.get("password")
        confirmation = data.get("password_confirmation")
        if confirmation is not None and confirmation != password:
            raise ValidationError(["Password confirmation doesn't match Password"])

        user = identity.create_user(db_session, data.get("email"), password, role="sales")
        log_security_event("user_signed_up", actor=user, email=user.email)
        token = identity.issue_token(user, app.config["SECRET_KEY"])
        return _status(201, "Signed up successfully.", {"user": user.to_dict(), "token": token})

    @app.route(f"{API}/current_user", methods=["GET"])
    @token_required
    def current_user():
        return jsonify({"user": request.current_user.to_dict()}), 200

    @app.route(f"{API}/dashboard", methods=["GET"])
    @token_required
    def dashboard():
        actor = request.current_user
        stats = patient_service.dashboard_stats(db_session, actor)
        stats["recent_patients"] = [p.to_dict() for p in stats["recent_patients"]]
        stats["total_prescriptions"] = prescription_service.count_for_owner(db_session, actor)
        return jsonify({"dashboard": stats}), 200

    # ── Users (admin only) ───────────────────────────────────────────

    @app.route(f"{API}/users", methods=["GET"])
    @token_required
    @admin_required
    def list_users():
        role = request.args.get("role") or None
        users = identity.list_users(db_session, role=role)
        return jsonify({"users": [u.to_dict() for u in users]}), 200

    @app.route(f"{API}/users/<int:user_id>", methods=["GET"])
    @token_required
    @admin_required
    def show_user(user_id):
        user = identity.get_user(db_session, user_id)
        return jsonify({"user": user.to_dict()}), 200

    @app.route(f"{API}/users", methods=["POST"])
    @token_required
    @admin_required
    def create_user():
        actor = request.current_user
        data = _json_body("user")
        try:
            user = identity.create_user(
                db_session, data.get("email"), data.get("password"), data.get("role"),
            )
        except (BadRequest, ValidationError) as e:
            log_security_event("invalid_user_creation_attempt", actor=actor, reason=e.message)
            raise
        log_security_event("user_created", actor=actor, user_id=user.id, email=user.email, role=user.role)
        return _status(201, "User created successfully.", {"user": user.to_dict()})

    @app.route(f"{API}/users/<int:user_id>", methods=["PUT", "PATCH"])
    @token_required
    @admin_required
    def update_user(user_id):
        actor = request.current_user
        user = identity.get_user(db_session, user_id)
        data = _json_body("user")
        try:
            identity.update_user(db_session, user, email=data.get("email"), role=data.get("role"))
        except (BadRequest, ValidationError) as e:
            log_security_event("invalid_user_update", actor=actor, user_id=user.id, reason=e.message)
            raise
        log_security_event("user_updated", actor=actor, user_id=user.id, email=user.email)
        return _status(200, "User updated successfully.", {"user": user.to_dict()})

    @app.route(f"{API}/users/<int:user_id>", methods=["DELETE"])
    @token_required
    @admin_required
    def delete_user(user_id):
        actor = request.current_user
        user = identity.get_user(db_session, user_id)
        authorize_user_deletion(actor, user)

        deleted_id, deleted_email = user.id, user.email
        identity.delete_user(db_session, user)
        log_security_event("user_deleted", actor=actor, user_id=deleted_id,
                           email=deleted_email, deleted_by=actor.id)
        return _status(200, "User deleted successfully.")

    @app.route(f"{API}/users/<int:user_id>/reset-password", methods=["POST"])
    @token_required
    @admin_required
    def reset_password(user_id):
        actor = request.current_user
        user = identity.get_user(db_session, user_id)
        data = _json_body("user", required=False)
        chosen = data.get("password")

        try:
            temporary_password = identity.reset_password(db_session, user, new_password=chosen)
        except BadRequest as e:
            log_security_event("invalid_password_reset", actor=actor, user_id=user.id, reason=e.message)
            raise
        log_security_event("password_reset", actor=actor, user_id=user.id, reset_by=actor.id,
                           generated=temporary_password is not None)

        payload = {"user_id": user.id, "email": user.email}
        if temporary_password is None:
            payload["message"] = "Password has been reset successfully."
        else:
            payload["temporary_password"] = temporary_password
            payload["message"] = (
                "Please share this temporary password with the user. "
                "They should change it after login."
            )
        return _status(200, "Password reset successfully.", payload)

    # ── Patients ─────────────────────────────────────────────────────

    @app.route(f"{API}/patients", methods=["GET"])
    @token_required
    def list_patients():
        page, per_page = _page_args()
        result = patient_service.list_patients(
            db_session, request.current_user,
            search=request.args.get("search"),
            city=request.args.get("city"),
            state=request.args.get("state"),
            status=request.args.get("status"),
            sort=request.args.get("sort"),
            page=page, per_page=per_page,
        )
        result["patients"] = [p.to_dict() for p in result["patients"]]
        return jsonify(result), 200

    @app.route(f"{API}/patients", methods=["POST"])
    @token_required
    def create_patient():
        patient = patient_service.create_patient(
            db_session, request.current_user, _json_body("patient"),
        )
        return jsonify(patient.to_dict()), 201

    @app.route(f"{API}/patients/<int:patient_id>", methods=["GET"])
    @token_required
    def show_patient(patient_id):
        patient = load_patient(db_session, request.current_user, patient_id)
        return jsonify(patient.to_dict()), 200

    @app.route(f"{API}/patients/<int:patient_id>", methods=["PUT", "PATCH"])
    @token_required
    def update_patient(patient_id):
        patient = load_patient(db_session, request.current_user, patient_id)
        patient_service.update_patient(db_session, patient, _json_body("patient"))
        return jsonify(patient.to_dict()), 200

    @app.route(f"{API}/patients/<int:patient_id>", methods=["DELETE"])
    @token_required
    def delete_patient(patient_id):
        patient = load_patient(db_session, request.current_user, patient_id)
        patient_service.delete_patient(db_session, patient)
        return "", 204

    @app.route(f"{API}/patients/<int:patient_id>/toggle_status", methods=["POST"])
    @token_required
    def toggle_patient_status(patient_id):
        patient = load_patient(db_session, request.current_user, patient_id)
        patient_service.toggle_active(db_session, patient)
        return jsonify(patient.to_dict()), 200

    # ── Prescriptions ────────────────────────────────────────────────

    @app.route(f"{API}/patients/<int:patient_id>/prescriptions", methods=["GET"])
    @token_required
    def list_patient_prescriptions(patient_id):
        patient = load_patient(db_session, request.current_user, patient_id)
        items = prescription_service.list_for_patient(db_session, patient)
        return jsonify([p.to_dict() for p in items]), 200

    @app.route(f"{API}/patients/<int:patient_id>/prescriptions", methods=["POST"])
    @token_required
    def create_prescription(patient_id):
        actor = request.current_user
        patient = load_patient(db_session, actor, patient_id)
        prescription = prescription_service.create_prescription(
            db_session, patient, actor, _json_body("prescription"),
        )
        return jsonify(prescription.to_dict()), 201

    @app.route(f"{API}/prescriptions/all", methods=["GET"])
    @token_required
    def list_all_prescriptions():
        page, per_page = _page_args()
        items, pagination = prescription_service.list_all(
            db_session, request.current_user, page=page, per_page=per_page,
            status=request.args.get("status") or None,
            patient_id=request.args.get("patient_id", type=int),
        )
        return jsonify({
            "prescriptions": [p.to_dict() for p in items],
            "pagination": pagination,
        }), 200

    @app.route(f"{API}/prescriptions/search", methods=["GET"])
    @token_required
    def search_prescription_patients():
        term = request.args.get("q") or request.args.get("search") or ""
        limit = request.args.get("limit", DEFAULT_SEARCH_LIMIT, type=int)
        limit = max(1, min(limit, MAX_PER_PAGE))
        results = patient_service.lookup_patients(db_session, request.current_user, term, limit)
        return jsonify({"results": results}), 200

    @app.route(f"{API}/prescriptions/<int:prescription_id>", methods=["GET"])
    @token_required
    def show_prescription(prescription_id):
        prescription = load_prescription(db_session, request.current_user, prescription_id)
        return jsonify(prescription.to_dict()), 200

    @app.route(f"{API}/prescriptions/<int:prescription_id>", methods=["PUT", "PATCH"])
    @token_required
    def update_prescription(prescription_id):
        prescription = load_prescription(db_session, request.current_user, prescription_id)
        prescription_service.update_prescription(
            db_session, prescription, _json_body("prescription"),
        )
        return jsonify(prescription.to_dict()), 200

    @app.route(f"{API}/prescriptions/<int:prescription_id>", methods=["DELETE"])
    @token_required
    def delete_prescription(prescription_id):
        prescription = load_prescription(db_session, request.current_user, prescription_id)
        prescription_service.delete_prescription(db_session, prescription)
        return "", 204

    # ── Error handlers ───────────────────────────────────────────────

    @app.errorhandler(AppError)
    def handle_app_error(e):
        if isinstance(e, Forbidden):
            log_security_event("forbidden", actor=getattr(request, "current_user", None),
                               reason=e.message)
        elif isinstance(e, Unauthorized) and not isinstance(e, InvalidCredentials):
            log_security_event("unauthorized", reason=e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Endpoint not found", "message": str(e)}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "message": str(e)}), 405

    @app.errorhandler(500)
    def internal_error(e):
        db_session.rollback()
        original = getattr(e, "original_exception", None) or e
        print(f"[ERROR] Unhandled error: {original}", file=sys.stderr)
        traceback.print_exception(type(original), original, original.__traceback__)
        return jsonify({"error": "Internal server error"}), 500
