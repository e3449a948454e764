"""
Request Audit Middleware.

Records every API request as a ledger event once the response is ready:
method -> action, path -> resource, PHI and high-risk prefixes -> data
classification. Enabled with AUDIT_HTTP_REQUESTS. A failure to record is
logged and never turns a served request into an error.
"""
import logging
import re
from typing import Iterable, Optional, Tuple

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from auditchain.app.core.exceptions import AuditLedgerError
from auditchain.app.core.logging import correlation_id_ctx
from auditchain.app.core.security import token_subject
from auditchain.app.schemas.audit import (
    DESCRIPTION_MAX_LENGTH,
    ENDPOINT_MAX_LENGTH,
    IDENTIFIER_MAX_LENGTH,
    USER_AGENT_MAX_LENGTH,
    AuditAction,
    AuditEvent,
    DataClassification,
    EventType,
    clip,
)
from auditchain.app.services.ledger_writer import LedgerWriter

logger = logging.getLogger(__name__)

PHI_PREFIXES: Tuple[str, ...] = (
    "/api/sessions",
    "/api/reflections",
    "/api/coach-notes",
    "/api/users",
    "/api/coach/clients",
)
HIGH_RISK_PREFIXES: Tuple[str, ...] = ("/api/admin", "/api/auth", "/api/compliance")
SKIP_PREFIXES: Tuple[str, ...] = ("/health", "/ready", "/docs", "/redoc", "/openapi.json", "/static", "/assets")
SKIP_SUFFIXES: Tuple[str, ...] = (".js", ".css", ".ico")

METHOD_ACTIONS = {
    "GET": AuditAction.READ,
    "POST": AuditAction.CREATE,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
}

_VERSION_SEGMENT = re.compile(r"^v\d+$")


def action_for_method(method: str) -> Optional[AuditAction]:
    return METHOD_ACTIONS.get(method.upper())


def resource_for_path(path: str) -> str:
    """/api/v1/users/42 -> users"""
    parts = [p for p in path.split("/") if p]
    if parts and parts[0] == "api":
        parts = parts[1:]
    if parts and _VERSION_SEGMENT.match(parts[0]):
        parts = parts[1:]
    return parts[0] if parts else "unknown"


def event_type_for(path: str, method: str) -> EventType:
    if "/admin" in path:
        return EventType.ADMIN_ACTION
    if "/auth" in path or "/security" in path:
        return EventType.SECURITY_EVENT
    if method.upper() == "GET":
        return EventType.DATA_ACCESS
    return EventType.USER_ACTION


def classification_for(
    path: str,
    method: str,
    phi_prefixes: Iterable[str] = PHI_PREFIXES,
    high_risk_prefixes: Iterable[str] = HIGH_RISK_PREFIXES,
) -> DataClassification:
    if any(path.startswith(p) for p in phi_prefixes):
        return DataClassification.RESTRICTED
    if any(path.startswith(p) for p in high_risk_prefixes):
        return DataClassification.CONFIDENTIAL
    if method.upper() == "GET" and path.startswith("/api/public"):
        return DataClassification.PUBLIC
    return DataClassification.INTERNAL


def should_skip(path: str, skip_prefixes: Iterable[str] = SKIP_PREFIXES) -> bool:
    return any(path.startswith(p) for p in skip_prefixes) or path.endswith(SKIP_SUFFIXES)


def build_request_event(request: Request, status_code: int, phi_prefixes: Iterable[str] = PHI_PREFIXES) -> Optional[AuditEvent]:
    """
    Translate a served request into an AuditEvent, or None for methods the
    ledger has no verb for. Header and path values are clipped to the column
    widths; raises EventValidationError for anything the ledger still rejects.
    """
    path = request.url.path
    method = request.method.upper()
    action = action_for_method(method)
    if action is None:
        return None

    phi = any(path.startswith(p) for p in phi_prefixes)
    return LedgerWriter.validate({
        "user_id": token_subject(request.headers.get("Authorization")),
        "action": action,
        "resource": clip(resource_for_path(path), IDENTIFIER_MAX_LENGTH),
        "ip_address": request.client.host if request.client else None,
        "user_agent": clip(request.headers.get("User-Agent"), USER_AGENT_MAX_LENGTH),
        "event_type": event_type_for(path, method),
        "data_classification": classification_for(path, method, phi_prefixes=phi_prefixes),
        "phi_accessed": phi,
        "status_code": status_code,
        "description": clip(f"{method} {path} - {status_code}", DESCRIPTION_MAX_LENGTH),
        "request_id": clip(correlation_id_ctx.get(), IDENTIFIER_MAX_LENGTH),
        "http_method": method,
        "endpoint": clip(path, ENDPOINT_MAX_LENGTH),
        "metadata": {"compliance_flags": ["HIPAA"]} if phi else None,
    })


class RequestAuditMiddleware(BaseHTTPMiddleware):
    """Appends one ledger record per served API request."""

    def __init__(
        self,
        app,
        phi_prefixes: Iterable[str] = PHI_PREFIXES,
        skip_prefixes: Iterable[str] = SKIP_PREFIXES,
    ):
        super().__init__(app)
        self.phi_prefixes = tuple(phi_prefixes)
        self.skip_prefixes = tuple(skip_prefixes)

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        if should_skip(request.url.path, self.skip_prefixes):
            return response

        ledger = getattr(request.app.state, "audit_ledger", None)
        if ledger is None:
            return response

        try:
            event = build_request_event(request, response.status_code, self.phi_prefixes)
            if event is not None:
                await ledger.record_event(event)
        except AuditLedgerError as e:
            logger.error(f"Request audit failed for {request.method} {request.url.path}: {e}")

        return response
