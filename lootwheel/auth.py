import hmac
import hashlib
import logging
from datetime import datetime as dt, timezone
from urllib.parse import parse_qs, urlencode

from lootwheel.config import AUTH_DATE_MAX_AGE_SECONDS


logger = logging.getLogger(__name__)

SECRET_KEY_SALT = b"WalletAuthData"


def _secret_key(auth_secret: str) -> bytes:
    return hmac.new(SECRET_KEY_SALT, auth_secret.encode(), hashlib.sha256).digest()


def _data_check_string(fields: dict) -> str:
    return "\n".join(f"{k}={fields[k]}" for k in sorted(fields.keys()))


def sign_auth_data(user_id: str, auth_secret: str, auth_date: int | None = None) -> str:
    """Build the signed auth string the wallet-login service hands to the client."""
    if auth_date is None:
        auth_date = int(dt.now(timezone.utc).timestamp())
    fields = {"auth_date": str(auth_date), "user": str(user_id)}
    fields["hash"] = hmac.new(_secret_key(auth_secret), _data_check_string(fields).encode(), hashlib.sha256).hexdigest()
    return urlencode(fields)


def validate_auth_data(auth_data_str: str | None, auth_secret: str, max_age_seconds: int = AUTH_DATE_MAX_AGE_SECONDS) -> str | None:
    """Return the verified user id, or None when the signature or age check fails."""
    try:
        if not auth_data_str:
            logger.warning("validate_auth_data: auth data is empty or None.")
            return None
        if not auth_secret:
            logger.error("validate_auth_data: AUTH_SECRET is not configured.")
            return None
        parsed_data = dict(parse_qs(auth_data_str))
        for key, value_list in parsed_data.items():
            if value_list: parsed_data[key] = value_list[0]
            else: logger.warning(f"validate_auth_data: Empty value list for key: {key}"); return None
        required_keys = ['hash', 'user', 'auth_date']
        missing_keys = [k for k in required_keys if k not in parsed_data]
        if missing_keys:
            logger.warning(f"validate_auth_data: Missing keys: {missing_keys}. Parsed: {list(parsed_data.keys())}")
            return None
        hash_received = parsed_data.pop('hash')
        try:
            auth_date_ts = int(parsed_data['auth_date'])
        except ValueError:
            logger.warning(f"validate_auth_data: auth_date is not an integer: {parsed_data['auth_date']!r}")
            return None
        current_ts = int(dt.now(timezone.utc).timestamp())
        if (current_ts - auth_date_ts) > max_age_seconds:
            logger.warning(f"validate_auth_data: auth_date expired. auth_date_ts: {auth_date_ts}, current_ts: {current_ts}, max_age: {max_age_seconds}s")
            return None
        calculated_hash_hex = hmac.new(_secret_key(auth_secret), _data_check_string(parsed_data).encode(), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(calculated_hash_hex, hash_received):
            logger.warning("validate_auth_data: Hash mismatch.")
            return None
        user_id = parsed_data['user'].strip()
        if not user_id:
            logger.warning("validate_auth_data: empty user id.")
            return None
        logger.debug(f"validate_auth_data: Hash matched for user {user_id}.")
        return user_id
    except Exception as e_validate:
        logger.error(f"validate_auth_data: General exception during auth validation: {e_validate}", exc_info=True)
        return None
