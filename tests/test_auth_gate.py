"""Tests for bearer-token verification."""

from datetime import timedelta

import pytest
from jose import jwt

from devicehub.api.dependencies import authenticate
from devicehub.core.errors import Unauthorized
from devicehub.core.security import ALGORITHM, create_access_token


def _token(settings, **kwargs):
    return create_access_token("user-1", "maker@example.com", settings=settings, **kwargs)


def test_valid_token_yields_identity(settings):
    identity = authenticate(f"Bearer {_token(settings)}", settings)

    assert identity.id == "user-1"
    assert identity.email == "maker@example.com"
    assert identity.issued_at is not None
    assert identity.expires_at > identity.issued_at


@pytest.mark.parametrize(
    "header",
    [None, "", "Bearer", "Bearer ", "bearer abc", "Token abc", "Bearer a b", "Bearer  abc"],
)
def test_malformed_headers_are_rejected(settings, header):
    with pytest.raises(Unauthorized):
        authenticate(header, settings)


def test_expired_token_is_rejected(settings):
    token = _token(settings, expires_delta=timedelta(minutes=-1))

    with pytest.raises(Unauthorized):
        authenticate(f"Bearer {token}", settings)


def test_token_signed_with_another_secret_is_rejected(settings):
    forged = settings.model_copy(update={"jwt_secret": "z" * 48})

    with pytest.raises(Unauthorized):
        authenticate(f"Bearer {_token(forged)}", settings)


@pytest.mark.parametrize("claim", ["iss", "aud"])
def test_wrong_issuer_or_audience_is_rejected(settings, claim):
    other = settings.model_copy(
        update={"jwt_issuer": "someone-else"} if claim == "iss" else {"jwt_audience": "other-app"}
    )

    with pytest.raises(Unauthorized):
        authenticate(f"Bearer {_token(other)}", settings)


def test_token_without_email_is_rejected(settings):
    token = jwt.encode(
        {"sub": "user-1", "exp": 4102444800, "iss": settings.jwt_issuer, "aud": settings.jwt_audience},
        settings.jwt_secret,
        algorithm=ALGORITHM,
    )

    with pytest.raises(Unauthorized):
        authenticate(f"Bearer {token}", settings)


def test_every_failure_has_the_same_message(settings):
    messages = set()
    for header in (None, "Bearer junk", f"Bearer {_token(settings, expires_delta=timedelta(seconds=-5))}"):
        with pytest.raises(Unauthorized) as excinfo:
            authenticate(header, settings)
        messages.add(excinfo.value.message)

    assert messages == {"Unauthorized"}
