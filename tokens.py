import base64
import binascii
import json
import logging

log = logging.getLogger(__name__)

SUBJECT_SEPARATOR = "|"


def decode_jwt_payload(token: str) -> dict | None:
    """Decode the claims segment of a JWT without verifying its signature."""
    parts = token.split(".")
    if len(parts) < 2:
        return None

    payload = parts[1].replace("-", "+").replace("_", "/")
    payload += "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.b64decode(payload, validate=True))
    except (binascii.Error, ValueError) as exc:
        log.debug("JWT payload decode failed: %s", exc)
        return None
    return claims if isinstance(claims, dict) else None


def account_id_from_token(token: str) -> str | None:
    """Return the account id carried in the `sub` claim.

    Subjects look like "auth0|user_01ABC"; the id is whatever follows the last "|".
    """
    claims = decode_jwt_payload(token)
    if not claims:
        return None
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub:
        return None
    if SUBJECT_SEPARATOR in sub:
        return sub.rsplit(SUBJECT_SEPARATOR, 1)[1] or None
    return sub
