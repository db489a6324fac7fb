from __future__ import annotations

import hmac
import secrets
from typing import Iterable, Optional

from grantportal.logging import log_security_event
from grantportal.service.errors import CsrfMismatch, SessionMissing
from grantportal.service.sessions import SessionRegistry
from grantportal.storage.models import Session

CSRF_HEADER = "X-CSRF-Token"
CSRF_COOKIE = "csrf_token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


class CsrfGuard:
    """Per-session anti-forgery token, rotated on every access renewal."""

    def __init__(self, sessions: SessionRegistry, exempt_paths: Iterable[str] = ()) -> None:
        self.sessions = sessions
        self.exempt_paths = frozenset(p.rstrip("/") or "/" for p in exempt_paths)

    def issue(self, session: Session) -> tuple[Session, str]:
        token = secrets.token_hex(32)
        updated = self.sessions.set_csrf_secret(session, token)
        return updated, token

    # A rotation is just a fresh issue: the previous value stops matching immediately
    rotate = issue

    @staticmethod
    def validate(session: Optional[Session], supplied: Optional[str]) -> bool:
        if session is None or not session.csrf_secret or not supplied:
            return False
        return hmac.compare_digest(session.csrf_secret.encode(), supplied.encode())

    def requires_check(self, method: str, path: str) -> bool:
        if method.upper() in SAFE_METHODS:
            return False
        return (path.rstrip("/") or "/") not in self.exempt_paths

    def enforce(self, session: Optional[Session], supplied: Optional[str]) -> None:
        if session is None:
            log_security_event("csrf_rejected", reason="session_missing")
            raise SessionMissing()
        if not self.validate(session, supplied):
            log_security_event(
                "csrf_rejected",
                reason="token_missing" if not supplied else "token_mismatch",
                session_id=session.id,
            )
            raise CsrfMismatch()
