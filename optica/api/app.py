"""
Flask application factory and server entry-point.
"""

import logging
import os
import sys
import traceback

from flask import Flask
from flask_cors import CORS

from optica.config import (
    SECRET_KEY, TOKEN_EXPIRY_HOURS, get_db_uri, get_registration_mode,
)
from optica.database import create_schema, init_engine, init_session_factory
from optica.api.routes import register_routes


def create_app(db_uri=None, registration_mode=None, secret_key=None):
    """Build and return a fully configured Flask application."""
    app = Flask(__name__)
    CORS(app)
    app.config.update(
        SECRET_KEY=secret_key or SECRET_KEY,
        REGISTRATION_MODE=registration_mode or get_registration_mode(),
    )

    # ── Initialise shared resources ──────────────────────────────────
    try:
        print("[init] Initializing database connection...")
        engine = init_engine(db_uri or get_db_uri())

        print("[init] Creating schema...")
        create_schema(engine)
        db_session = init_session_factory(engine)

        print("[init] ✓ API server ready")
    except Exception as e:
        print(f"[FATAL] Failed to initialize: {e}", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)

    app.extensions["optica_db"] = db_session

    @app.teardown_appcontext
    def remove_session(_exc=None):
        db_session.remove()

    # ── Register routes ──────────────────────────────────────────────
    register_routes(app, db_session)

    return app


def main():
    """Run the development server."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    print("=" * 60)
    print("Optica Manager – REST API Server")
    print("=" * 60)

    app = create_app()

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    debug = os.getenv("FLASK_ENV") == "development"

    print(f"\n[server] Starting Flask API on {host}:{port}")
    print(f"[server] Debug mode: {debug}")
    print(f"[server] Registration mode: {app.config['REGISTRATION_MODE']}")
    print(f"[server] Token expiry: {TOKEN_EXPIRY_HOURS} hours")
    print("\nAPI Endpoints:")
    print(f"  - POST   http://{host}:{port}/api/v1/users/sign_in")
    print(f"  - DELETE http://{host}:{port}/api/v1/users/sign_out")
    print(f"  - GET    http://{host}:{port}/api/v1/patients")
    print(f"  - GET    http://{host}:{port}/api/v1/prescriptions/all")
    print(f"  - GET    http://{host}:{port}/api/v1/users")
    print(f"  - GET    http://{host}:{port}/health")
    print("\n" + "=" * 60)

    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
