from __future__ import annotations

import base64
import binascii
import secrets
from dataclasses import dataclass

AUTH_HEADER = "Authorization"
AUTH_CHALLENGE = "WWW-Authenticate"
ADMIN_REALM = 'Basic realm="admin"'


@dataclass
class AuthResult:
    allowed: bool
    reason: str


class BasicAuthenticator:
    def __init__(self, username: str, password: str) -> None:
        self._username = username
        self._password = password

    def check(self, auth_header: str | None) -> AuthResult:
        if not auth_header:
            return AuthResult(allowed=False, reason="Authentication required.")

        scheme, _, encoded = auth_header.partition(" ")
        if scheme.lower() != "basic" or not encoded:
            return AuthResult(allowed=False, reason="Invalid credentials.")

        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return AuthResult(allowed=False, reason="Invalid credentials.")

        username, _, password = decoded.partition(":")
        user_ok = secrets.compare_digest(username.encode(), self._username.encode())
        pass_ok = secrets.compare_digest(password.encode(), self._password.encode())
        if not (user_ok and pass_ok):
            return AuthResult(allowed=False, reason="Invalid credentials.")

        return AuthResult(allowed=True, reason="Authenticated")


def create_basic_authenticator(username: str, password: str) -> BasicAuthenticator:
    return BasicAuthenticator(username=username, password=password)
