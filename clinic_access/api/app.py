"""
Flask application factory and server entry-point.
"""

import os
import sys
import traceback

from flask import Flask
from flask_cors import CORS

from clinic_access.config import GUARD_FAIL_CLOSED, TOKEN_EXPIRY_HOURS
from clinic_access.database import init_engine
from clinic_access.llm import init_llm
from clinic_access.permissions import check_route_table
from clinic_access.store import AccessStore
from clinic_access.api.auth import STORE_EXTENSION
from clinic_access.api.guard import register_guard
from clinic_access.api.routes import register_routes


def create_app(store=None, llm=None, fail_closed=None):
    """
    Build and return a fully configured Flask application.

    When *store* is omitted the database engine and LLM are initialised from
    the environment; tests pass their own store (and optionally a fake LLM).
    """
    app = Flask(__name__)
    CORS(app)
    app.config["GUARD_FAIL_CLOSED"] = GUARD_FAIL_CLOSED if fail_closed is None else fail_closed

    # ── Initialise shared resources ──────────────────────────────────
    if store is None:
        try:
            print("[init] Initializing database connection...")
            store = AccessStore(init_engine())

            print("[init] Initializing LLM...")
            llm = init_llm()
        except Exception as e:
            print(f"[FATAL] Failed to initialize: {e}", file=sys.stderr)
            traceback.print_exc()
            sys.exit(1)

    app.extensions[STORE_EXTENSION] = store

    # ── Guard, routes, boot-time route check ─────────────────────────
    register_guard(app, store)
    register_routes(app, store, llm)

    checked = check_route_table([rule.rule for rule in app.url_map.iter_rules()])
    print(f"[init] Permission guard covers {len(checked)} API routes "
          f"(fail-{'closed' if app.config['GUARD_FAIL_CLOSED'] else 'open'})")

    return app


def main():
    """Run the development server."""
    print("=" * 60)
    print("Clinic Access Service – REST API Server")
    print("=" * 60)

    app = create_app()

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    debug = os.getenv("FLASK_ENV") == "development"

    print(f"\n[server] Starting Flask API on {host}:{port}")
    print(f"[server] Debug mode: {debug}")
    print(f"[server] CORS enabled: True")
    print(f"[server] Token expiry: {TOKEN_EXPIRY_HOURS} hours")
    print("\nAPI Endpoints:")
    print(f"  - POST http://{host}:{port}/api/auth/login")
    print(f"  - GET  http://{host}:{port}/api/user/clinics")
    print(f"  - POST http://{host}:{port}/api/user/select-clinic")
    print(f"  - GET  http://{host}:{port}/api/roles")
    print(f"  - GET  http://{host}:{port}/api/patients")
    print(f"  - POST http://{host}:{port}/api/test-reports/compare")
    print(f"  - GET  http://{host}:{port}/health")
    print("\n" + "=" * 60)

    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
