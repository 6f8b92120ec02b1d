from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import StoreIntegration
from app.services.integration_log import _get_session, log_integration
from app.services.shipstation.credentials import (
    INTEGRATION_TYPE,
    decrypt_integration,
    list_active_integrations,
    verify_password,
)
from app.utils.crypto import CredentialDecryptError
from app.utils.logger import logger


@dataclass
class AuthResult:
    success: bool
    store_id: Optional[str] = None
    integration_id: Optional[str] = None
    method: Optional[str] = None
    error: Optional[str] = None


def _lower_headers(headers: Mapping[str, Any]) -> Dict[str, str]:
    return {str(k).lower(): str(v) for k, v in (headers or {}).items()}


def parse_basic_auth(authorization: Optional[str]) -> Optional[Tuple[str, str]]:
    """Decode ``Basic <base64(user:pass)>``. Returns None when malformed."""
    if not authorization or not authorization.startswith("Basic "):
        return None
    try:
        decoded = base64.b64decode(authorization[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep or not username or not password:
        return None
    return username, password


def _equal(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _report_decrypt_failure(session: Session, integration: StoreIntegration, exc: Exception) -> None:
    logger.error(
        "Skipping store %s during authentication: credential decryption failed (%s)",
        integration.store_id,
        exc,
    )
    log_integration(
        operation="authentication",
        status="failure",
        store_id=integration.store_id,
        error_message=f"decryption failed: {exc}",
        db=session,
    )


def _match_basic(session: Session, username: str, password: str) -> AuthResult:
    dedicated = (
        session.query(StoreIntegration)
        .filter(StoreIntegration.integration_type == INTEGRATION_TYPE)
        .filter(StoreIntegration.is_active.is_(True))
        .filter(StoreIntegration.shipstation_auth_enabled.is_(True))
        .filter(StoreIntegration.shipstation_username == username)
        .one_or_none()
    )
    if dedicated is not None:
        if verify_password(password, dedicated.shipstation_password_hash):
            return AuthResult(
                success=True,
                store_id=dedicated.store_id,
                integration_id=dedicated.id,
                method="basic",
            )
        return AuthResult(success=False, error="Invalid credentials")

    for integration in list_active_integrations(session):
        try:
            creds = decrypt_integration(integration)
        except CredentialDecryptError as exc:
            _report_decrypt_failure(session, integration, exc)
            continue
        if _equal(creds.api_key, username) and _equal(creds.api_secret, password):
            return AuthResult(
                success=True,
                store_id=integration.store_id,
                integration_id=integration.id,
                method="basic_legacy",
            )
    return AuthResult(success=False, error="Invalid credentials")


def _match_api_key(session: Session, api_key: str, api_secret: str) -> AuthResult:
    for integration in list_active_integrations(session):
        try:
            creds = decrypt_integration(integration)
        except CredentialDecryptError as exc:
            _report_decrypt_failure(session, integration, exc)
            continue
        if _equal(creds.api_key, api_key) and _equal(creds.api_secret, api_secret):
            return AuthResult(
                success=True,
                store_id=integration.store_id,
                integration_id=integration.id,
                method="api_key",
            )
    return AuthResult(success=False, error="Invalid API credentials")


def _run(db: Optional[Session], matcher, *args: str) -> AuthResult:
    session, owns_session = _get_session(db)
    try:
        result = matcher(session, *args)
        if owns_session:
            # Persist decrypt-failure audit rows.
            session.commit()
        return result
    except Exception:
        if owns_session:
            session.rollback()
        raise
    finally:
        if owns_session:
            session.close()


def authenticate_basic(authorization: Optional[str], *, db: Optional[Session] = None) -> AuthResult:
    """Match Basic-Auth credentials against store integrations.

    Dedicated logins (username + password hash) are checked first; legacy
    integrations accept the decrypted API key/secret as username/password.
    """
    parsed = parse_basic_auth(authorization)
    if parsed is None:
        return AuthResult(success=False, error="Missing or invalid Basic authentication header")
    return _run(db, _match_basic, *parsed)


def authenticate_api_key(
    api_key: Optional[str],
    api_secret: Optional[str],
    *,
    db: Optional[Session] = None,
) -> AuthResult:
    if not api_key or not api_secret:
        return AuthResult(success=False, error="Missing API key or secret")
    return _run(db, _match_api_key, api_key, api_secret)


def authenticate_multi(headers: Mapping[str, Any], *, db: Optional[Session] = None) -> AuthResult:
    """Try Basic-Auth, then the x-api-key/x-api-secret headers."""
    h = _lower_headers(headers)

    if h.get("authorization", "").startswith("Basic "):
        result = authenticate_basic(h["authorization"], db=db)
        if result.success:
            return result

    if h.get("x-api-key") and h.get("x-api-secret"):
        result = authenticate_api_key(h["x-api-key"], h["x-api-secret"], db=db)
        if result.success:
            return result

    return AuthResult(success=False, error="Authentication failed")


def get_request_ip(headers: Mapping[str, Any], client_host: Optional[str] = None) -> str:
    h = _lower_headers(headers)
    forwarded = h.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = h.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return client_host or "unknown"


def log_auth_attempt(
    *,
    headers: Mapping[str, Any],
    method: str,
    result: AuthResult,
    client_host: Optional[str] = None,
    db: Optional[Session] = None,
) -> None:
    """Record an authentication attempt without any credential material."""
    h = _lower_headers(headers)
    log_integration(
        operation="authentication",
        status="success" if result.success else "failure",
        store_id=result.store_id,
        request_data={
            "method": method,
            "ip": get_request_ip(headers, client_host),
            "user_agent": h.get("user-agent", "unknown"),
            "auth_method": result.method,
        },
        error_message=None if result.success else result.error,
        db=db,
    )


def generate_webhook_signature(payload: Union[str, bytes], secret: str) -> str:
    """Hex HMAC-SHA256 of the raw payload."""
    body = payload.encode("utf-8") if isinstance(payload, str) else payload
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: Union[str, bytes], signature: Optional[str], secret: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    expected = generate_webhook_signature(payload, secret)
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[7:]
    return hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8"))
