"""
Error tracking with Sentry

Laudo requests carry patient data (names, CPF, conclusions), so events are
scrubbed before they leave the process.
"""
import os
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.asyncio import AsyncioIntegration

SENSITIVE_KEYS = {
    "conclusion", "conclusao", "senha", "password", "access_code",
    "patient_name", "cpf", "authorization", "cookie",
}
FILTERED = "[Filtered]"


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: FILTERED if str(key).lower() in SENSITIVE_KEYS else _scrub(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_scrub(item) for item in value]
    return value


def scrub_event(event: Dict[str, Any], hint: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """before_send hook: drop request bodies and mask known sensitive keys"""
    request = event.get("request")
    if request:
        request.pop("data", None)
        request.pop("cookies", None)
        if "headers" in request:
            request["headers"] = _scrub(request["headers"])

    if "extra" in event:
        event["extra"] = _scrub(event["extra"])
    for frame_list in _frames(event):
        for frame in frame_list:
            if "vars" in frame:
                frame["vars"] = _scrub(frame["vars"])
    return event


def _frames(event: Dict[str, Any]):
    for exception in (event.get("exception") or {}).get("values", []):
        frames = (exception.get("stacktrace") or {}).get("frames")
        if frames:
            yield frames


def init_sentry(release: str = "1.0.0") -> bool:
    """
    Initialize Sentry when SENTRY_DSN is set
    """
    sentry_dsn = os.getenv("SENTRY_DSN")
    sentry_environment = os.getenv("SENTRY_ENVIRONMENT", "development")

    if not sentry_dsn:
        return False

    sentry_sdk.init(
        dsn=sentry_dsn,
        environment=sentry_environment,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            AsyncioIntegration(),
        ],
        traces_sample_rate=1.0 if sentry_environment == "development" else 0.1,
        send_default_pii=False,
        before_send=scrub_event,
        release=os.getenv("APP_VERSION", release),
    )
    return True
