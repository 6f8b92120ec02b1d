import logging
import sys
from typing import Any, Dict, Mapping, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("shipstation_connector")


SENSITIVE_KEYS = {
    "api_key",
    "api_secret",
    "apikey",
    "apisecret",
    "password",
    "password_hash",
    "shipstation_password_hash",
    "authorization",
    "api-key",
    "x-api-key",
    "x-api-secret",
    "secret",
}


def _mask_value(value: Any) -> str:
    text = str(value)
    if len(text) > 16:
        return f"***{text[-4:]}"
    return "***"


def mask_credentials(data: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return a copy of ``data`` with credential values shortened.

    Nested dictionaries are masked recursively so request payloads can be
    stored in integration_logs without leaking secrets.
    """
    if not data:
        return {}

    sanitized: Dict[str, Any] = {}
    for key, value in data.items():
        if str(key).lower() in SENSITIVE_KEYS and value is not None:
            sanitized[key] = _mask_value(value)
        elif isinstance(value, Mapping):
            sanitized[key] = mask_credentials(value)
        else:
            sanitized[key] = value
    return sanitized


def mask_headers(headers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    masked: Dict[str, Any] = {}
    for k, v in (headers or {}).items():
        lk = str(k).lower()
        if lk in SENSITIVE_KEYS or "token" in lk or "signature" in lk:
            masked[k] = "***"
        else:
            masked[k] = v
    return masked
