"""
PIN / device-token handshake layered on the SessionRegistry.

Failed attempts are not rate limited and never lock a session out; the
PIN is the only guard.
"""

import secrets
from typing import Optional

import messages
from messages import AuthMessage
from remote_common import log_info, log_warning
from sessions import CredentialStore, Session, SessionRegistry

TOKEN_INVALID = "Token expired or invalid"
PIN_INVALID = "Invalid PIN"
NAME_MISMATCH = "Computer name mismatch"
PIN_REQUIRED = "PIN required"
NOT_AUTHENTICATED = "Not authenticated"


def _same(a: str, b: str) -> bool:
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class AuthGate:
    def __init__(self, registry: SessionRegistry, credentials: Optional[CredentialStore],
                 pin: Optional[str], computer_name: str):
        self.registry = registry
        self.credentials = credentials
        self.pin = pin or None
        self.computer_name = computer_name

    @property
    def auth_required(self) -> bool:
        return self.pin is not None

    def greeting(self, session: Session) -> dict:
        return messages.connected(session.session_id, self.auth_required, self.computer_name)

    def handle_auth(self, session: Session, msg: AuthMessage) -> dict:
        """Run one auth attempt and return the auth_result to send back."""
        sid = session.session_id

        if not self.auth_required:
            self.registry.mark_authenticated(sid, msg.device_id)
            return messages.auth_result(True, computer_name=self.computer_name)

        if msg.token:
            stored = None
            if self.credentials is not None and msg.device_id:
                stored = self.credentials.get_token(msg.device_id)
            if stored and _same(stored, msg.token):
                self.registry.mark_authenticated(sid, msg.device_id)
                log_info(f"[Auth] {sid} authenticated via token (device {msg.device_id})")
                return messages.auth_result(True, computer_name=self.computer_name)
            if stored and self.credentials is not None:
                self.credentials.remove_token(msg.device_id)
            log_warning(f"[Auth] {sid} presented an invalid token (device {msg.device_id})")
            return messages.auth_result(False, error=TOKEN_INVALID, require_pin=True)

        if msg.pin is None:
            return messages.auth_result(False, error=PIN_REQUIRED)

        pin_ok = _same(msg.pin, self.pin)
        name_ok = (msg.computer_name is None
                   or msg.computer_name.lower() == self.computer_name.lower())
        if not (pin_ok and name_ok):
            log_warning(f"[Auth] {sid} auth failed ({'name' if pin_ok else 'pin'})")
            return messages.auth_result(False, error=NAME_MISMATCH if pin_ok else PIN_INVALID)

        self.registry.mark_authenticated(sid, msg.device_id)
        token = None
        if msg.remember_me and msg.device_id and self.credentials is not None:
            token = self.credentials.mint_token()
            self.credentials.save_token(msg.device_id, token)
        log_info(f"[Auth] {sid} authenticated via PIN" + (" (token issued)" if token else ""))
        return messages.auth_result(True, token=token, computer_name=self.computer_name)

    def revoke(self, device_id) -> bool:
        if self.credentials is None:
            return False
        return self.credentials.remove_token(device_id)
