from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import ShipFrom, StoreIntegration
from app.services.integration_log import _get_session, log_integration
from app.utils.crypto import CredentialDecryptError, decrypt, encrypt
from app.utils.logger import logger


INTEGRATION_TYPE = "shipstation"

# Used only when SHIPSTATION_ALLOW_PLACEHOLDER_SHIP_FROM is enabled.
PLACEHOLDER_SHIP_FROM: Dict[str, str] = {
    "name": "Fulfillment Center",
    "phone": "555-555-5555",
    "company_name": "",
    "address_line1": "123 Warehouse St",
    "city_locality": "Anytown",
    "state_province": "CA",
    "postal_code": "12345",
    "country_code": "US",
    "address_residential_indicator": "no",
}

# Stored format: "pbkdf2_sha256$<iterations>$<salt_hex>$<hash_hex>".
_PBKDF2_ALGO_PREFIX = "pbkdf2_sha256"
_PBKDF2_ITERATIONS = 100_000
_PBKDF2_SALT_BYTES = 16


def hash_password(password: str) -> str:
    """Return a PBKDF2-SHA256 hash string for a Basic-Auth password."""
    if not isinstance(password, str):
        raise TypeError("password must be a string")

    salt = os.urandom(_PBKDF2_SALT_BYTES)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, _PBKDF2_ITERATIONS)
    salt_hex = binascii.hexlify(salt).decode("ascii")
    hash_hex = binascii.hexlify(dk).decode("ascii")
    return f"{_PBKDF2_ALGO_PREFIX}${_PBKDF2_ITERATIONS}${salt_hex}${hash_hex}"


def verify_password(password: str, stored: Optional[str]) -> bool:
    """Check a password against a PBKDF2 hash or a legacy base64 value.

    Returns False for malformed hashes.
    """
    if not stored or password is None:
        return False

    if stored.startswith(_PBKDF2_ALGO_PREFIX + "$"):
        try:
            _, iter_str, salt_hex, hash_hex = stored.split("$", 3)
            iterations = int(iter_str)
            salt = binascii.unhexlify(salt_hex.encode("ascii"))
            expected = binascii.unhexlify(hash_hex.encode("ascii"))
        except (ValueError, binascii.Error):
            return False
        dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
        return hmac.compare_digest(dk, expected)

    # Legacy rows stored base64(password).
    legacy = base64.b64encode(password.encode("utf-8")).decode("ascii")
    return hmac.compare_digest(legacy, stored)


@dataclass
class StoreCredentials:
    """Decrypted credential bundle for one store integration.

    Lives for a single request or job; never cached.
    """

    store_id: str
    integration_id: str
    api_key: Optional[str]
    api_secret: Optional[str]
    configuration: Dict[str, Any] = field(default_factory=dict)

    @property
    def api_version(self) -> str:
        return str(self.configuration.get("api_version") or "legacy").lower()

    def __repr__(self) -> str:
        return f"StoreCredentials(store_id={self.store_id!r}, integration_id={self.integration_id!r})"


def list_active_integrations(db: Session, integration_type: str = INTEGRATION_TYPE) -> List[StoreIntegration]:
    return (
        db.query(StoreIntegration)
        .filter(StoreIntegration.integration_type == integration_type)
        .filter(StoreIntegration.is_active.is_(True))
        .order_by(StoreIntegration.created_at.asc())
        .all()
    )


def decrypt_integration(integration: StoreIntegration) -> StoreCredentials:
    """Decrypt one integration row. Raises CredentialDecryptError."""
    return StoreCredentials(
        store_id=integration.store_id,
        integration_id=integration.id,
        api_key=decrypt(integration.api_key_encrypted),
        api_secret=decrypt(integration.api_secret_encrypted),
        configuration=dict(integration.configuration or {}),
    )


def get_store_credentials(
    store_id: str,
    *,
    integration_type: str = INTEGRATION_TYPE,
    db: Optional[Session] = None,
) -> Optional[StoreCredentials]:
    """Return decrypted credentials for an active store integration, or None.

    Decryption failures are logged to integration_logs and re-raised so the
    caller can report the row as misconfigured.
    """
    session, owns_session = _get_session(db)
    try:
        integration = (
            session.query(StoreIntegration)
            .filter(StoreIntegration.store_id == store_id)
            .filter(StoreIntegration.integration_type == integration_type)
            .filter(StoreIntegration.is_active.is_(True))
            .one_or_none()
        )
        if integration is None:
            return None
        try:
            return decrypt_integration(integration)
        except CredentialDecryptError as exc:
            logger.error("Credential decryption failed for store %s: %s", store_id, exc)
            log_integration(
                operation="credential_resolution",
                status="failure",
                store_id=store_id,
                integration_type=integration_type,
                error_message=f"decryption failed: {exc}",
                db=session,
            )
            if owns_session:
                session.commit()
            raise
    finally:
        if owns_session:
            session.close()


def save_store_credentials(
    store_id: str,
    *,
    api_key: str,
    api_secret: str,
    configuration: Optional[Dict[str, Any]] = None,
    integration_type: str = INTEGRATION_TYPE,
    db: Optional[Session] = None,
) -> StoreIntegration:
    """Create or update a store integration with encrypted API credentials."""
    session, owns_session = _get_session(db)
    try:
        integration = (
            session.query(StoreIntegration)
            .filter(StoreIntegration.store_id == store_id)
            .filter(StoreIntegration.integration_type == integration_type)
            .one_or_none()
        )
        if integration is None:
            integration = StoreIntegration(store_id=store_id, integration_type=integration_type)
            session.add(integration)
        integration.api_key_encrypted = encrypt(api_key)
        integration.api_secret_encrypted = encrypt(api_secret)
        if configuration is not None:
            integration.configuration = dict(configuration)
        integration.is_active = True

        if owns_session:
            session.commit()
            session.refresh(integration)
        else:
            session.flush()
        return integration
    except Exception:
        logger.error("Failed to save credentials for store %s", store_id, exc_info=True)
        if owns_session:
            session.rollback()
        raise
    finally:
        if owns_session:
            session.close()


@dataclass
class GeneratedCredentials:
    username: str
    password: str
    integration_id: str
    previous_username: Optional[str] = None
    was_enabled: bool = False


def generate_store_credentials(store_id: str, *, db: Optional[Session] = None) -> GeneratedCredentials:
    """Create or rotate the dedicated Basic-Auth login for a store.

    Only the PBKDF2 hash is stored; the plaintext password is returned once.
    """
    session, owns_session = _get_session(db)
    try:
        integration = (
            session.query(StoreIntegration)
            .filter(StoreIntegration.store_id == store_id)
            .filter(StoreIntegration.integration_type == INTEGRATION_TYPE)
            .one_or_none()
        )
        if integration is None:
            integration = StoreIntegration(store_id=store_id, integration_type=INTEGRATION_TYPE, configuration={})
            session.add(integration)
        previous_username = integration.shipstation_username
        was_enabled = bool(integration.shipstation_auth_enabled)

        short_store = "".join(ch for ch in store_id if ch.isalnum())[:8].lower()
        username = f"ss_{short_store}_{secrets.token_hex(3)}"
        password = secrets.token_urlsafe(18)

        integration.shipstation_username = username
        integration.shipstation_password_hash = hash_password(password)
        integration.shipstation_auth_enabled = True
        integration.is_active = True

        if owns_session:
            session.commit()
            session.refresh(integration)
        else:
            session.flush()

        logger.info("Generated carrier login %s for store %s", username, store_id)
        return GeneratedCredentials(
            username=username,
            password=password,
            integration_id=integration.id,
            previous_username=previous_username,
            was_enabled=was_enabled,
        )
    except Exception:
        logger.error("Failed to generate carrier credentials for store %s", store_id, exc_info=True)
        if owns_session:
            session.rollback()
        raise
    finally:
        if owns_session:
            session.close()


def disable_store_basic_auth(store_id: str, *, db: Optional[Session] = None) -> bool:
    """Drop the dedicated login; API key/secret authentication keeps working.

    Returns False when the store has no carrier integration.
    """
    session, owns_session = _get_session(db)
    try:
        integration = (
            session.query(StoreIntegration)
            .filter(StoreIntegration.store_id == store_id)
            .filter(StoreIntegration.integration_type == INTEGRATION_TYPE)
            .one_or_none()
        )
        if integration is None:
            return False
        integration.shipstation_username = None
        integration.shipstation_password_hash = None
        integration.shipstation_auth_enabled = False
        if owns_session:
            session.commit()
        else:
            session.flush()
        logger.info("Disabled carrier login for store %s", store_id)
        return True
    except Exception:
        if owns_session:
            session.rollback()
        raise
    finally:
        if owns_session:
            session.close()


# ---------------------------------------------------------------------------
# Ship-from (warehouse) resolution
# ---------------------------------------------------------------------------


@dataclass
class ShipFromResolution:
    address: Optional[Dict[str, Any]]
    source: str  # configuration | database | placeholder | missing

    @property
    def is_placeholder(self) -> bool:
        return self.source == "placeholder"


def shipfrom_to_address(row: ShipFrom) -> Dict[str, Any]:
    return {
        "name": row.name,
        "phone": row.phone or "",
        "company_name": row.company_name or "",
        "address_line1": row.address_line1,
        "address_line2": row.address_line2 or "",
        "city_locality": row.city_locality,
        "state_province": row.state_province,
        "postal_code": row.postal_code,
        "country_code": row.country_code or "US",
        "address_residential_indicator": "no",
    }


def _configured_ship_from(configuration: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    configuration = configuration or {}
    candidate = configuration.get("ship_from") or configuration.get("shipFromAddress")
    if not isinstance(candidate, dict):
        return None
    if not candidate.get("address_line1") or not candidate.get("postal_code"):
        return None
    address = dict(PLACEHOLDER_SHIP_FROM)
    address.update({k: v for k, v in candidate.items() if v is not None})
    return address


def resolve_ship_from(
    store_id: str,
    configuration: Optional[Dict[str, Any]] = None,
    *,
    allow_placeholder: bool = False,
    db: Optional[Session] = None,
) -> ShipFromResolution:
    """Pick the origin address for an outbound shipment.

    Order of preference: integration configuration, the store's default
    warehouse (else its oldest), then the placeholder when allowed.
    """
    configured = _configured_ship_from(configuration)
    if configured:
        return ShipFromResolution(address=configured, source="configuration")

    session, owns_session = _get_session(db)
    try:
        row = (
            session.query(ShipFrom)
            .filter(ShipFrom.store_id == store_id)
            .order_by(ShipFrom.is_default.desc(), ShipFrom.created_at.asc())
            .first()
        )
        if row is not None:
            return ShipFromResolution(address=shipfrom_to_address(row), source="database")
    finally:
        if owns_session:
            session.close()

    if allow_placeholder:
        logger.warning(
            "No ship-from address configured for store %s; using placeholder warehouse address", store_id
        )
        return ShipFromResolution(address=dict(PLACEHOLDER_SHIP_FROM), source="placeholder")

    logger.warning("No ship-from address configured for store %s", store_id)
    return ShipFromResolution(address=None, source="missing")
