from datetime import datetime as dt, timezone
from urllib.parse import parse_qs, urlencode

from lootwheel.auth import sign_auth_data, validate_auth_data


SECRET = "test-auth-secret"


def test_signed_data_validates_to_user():
    assert validate_auth_data(sign_auth_data("alice", SECRET), SECRET) == "alice"


def test_wrong_secret_is_rejected():
    assert validate_auth_data(sign_auth_data("alice", SECRET), "another-secret") is None


def test_tampered_user_is_rejected():
    fields = {k: v[0] for k, v in parse_qs(sign_auth_data("alice", SECRET)).items()}
    fields["user"] = "mallory"

    assert validate_auth_data(urlencode(fields), SECRET) is None


def test_expired_auth_date_is_rejected():
    old = int(dt.now(timezone.utc).timestamp()) - 7200

    assert validate_auth_data(sign_auth_data("alice", SECRET, auth_date=old), SECRET, max_age_seconds=3600) is None


def test_missing_or_malformed_data_is_rejected():
    assert validate_auth_data(None, SECRET) is None
    assert validate_auth_data("", SECRET) is None
    assert validate_auth_data("user=alice&auth_date=1", SECRET) is None
    assert validate_auth_data("user=alice&auth_date=soon&hash=00", SECRET) is None
    assert validate_auth_data(sign_auth_data("alice", SECRET), "") is None
