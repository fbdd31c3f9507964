"""
Security audit trail.

One JSON line per event on the "optica.audit" logger. Writing an event must
never break the request that triggered it.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from flask import has_request_context, request

logger = logging.getLogger("optica.audit")


def log_security_event(event_type: str, actor=None, **details):
    """Record *event_type* with the acting user and request context."""
    try:
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "user_id": getattr(actor, "id", None),
        }
        if has_request_context():
            record.update({
                "ip": request.remote_addr,
                "user_agent": request.user_agent.string,
                "path": request.path,
                "method": request.method,
            })
        record["details"] = details
        logger.warning(json.dumps(record, default=str))
    except Exception as e:
        print(f"[WARN] Failed to write audit event {event_type}: {e}", file=sys.stderr)
