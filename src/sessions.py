"""
Session registry and persisted device credentials.

SessionRegistry is the only owner of Session objects; everything else
refers to a session by id and goes through the registry to change it.
"""

import json
import os
import secrets
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Dict, List, Optional

from remote_common import PLATFORM, log_debug, log_error, log_info, log_warning


class TransportKind(Enum):
    SOCKET = "socket"
    PEER = "peer"


class SessionState(Enum):
    CONNECTING = auto()
    AWAITING_AUTH = auto()
    AUTHENTICATED = auto()
    REJECTED = auto()


@dataclass
class Session:
    session_id: str
    transport_kind: TransportKind
    state: SessionState = SessionState.CONNECTING
    device_id: Optional[str] = None
    remote_addr: str = ""
    connected_at: float = field(default_factory=time.time)
    last_seen_at: float = field(default_factory=time.time)
    alive: bool = True
    mute_holds: int = 0

    @property
    def authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED


def new_session_id() -> str:
    return uuid.uuid4().hex[:16]


class SessionRegistry:
    def __init__(self, on_connection_change: Optional[Callable[[dict], None]] = None):
        self._sessions: Dict[str, Session] = {}
        self.on_connection_change = on_connection_change

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, session_id):
        return session_id in self._sessions

    def create(self, transport_kind: TransportKind, auth_required: bool, remote_addr: str = "") -> Session:
        session = Session(new_session_id(), transport_kind, remote_addr=remote_addr)
        self._sessions[session.session_id] = session
        if auth_required:
            session.state = SessionState.AWAITING_AUTH
        else:
            session.state = SessionState.AUTHENTICATED
            self._notify()
        log_info(f"[Session] {session.session_id} connected via {transport_kind.value}"
                 f"{' from ' + remote_addr if remote_addr else ''}")
        return session

    def get(self, session_id) -> Optional[Session]:
        return self._sessions.get(session_id)

    def all_sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def authenticated_sessions(self) -> List[Session]:
        return [s for s in self._sessions.values() if s.authenticated]

    def mark_authenticated(self, session_id, device_id=None):
        session = self._sessions.get(session_id)
        if session is None or session.state == SessionState.REJECTED:
            return
        session.state = SessionState.AUTHENTICATED
        if device_id:
            session.device_id = device_id
        self._notify()

    def mark_rejected(self, session_id):
        """Closed before authenticating. Terminal."""
        session = self._sessions.get(session_id)
        if session is not None:
            session.state = SessionState.REJECTED
            log_debug(f"[Session] {session_id} closed before authenticating")

    def mark_seen(self, session_id):
        session = self._sessions.get(session_id)
        if session is not None:
            session.alive = True
            session.last_seen_at = time.time()

    def mark_pinged(self, session_id):
        session = self._sessions.get(session_id)
        if session is not None:
            session.alive = False

    def adjust_mute_holds(self, session_id, delta) -> int:
        session = self._sessions.get(session_id)
        if session is None:
            return 0
        session.mute_holds = max(0, session.mute_holds + delta)
        return session.mute_holds

    def remove(self, session_id) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if not session.authenticated:
            self.mark_rejected(session_id)
        del self._sessions[session_id]
        log_info(f"[Session] {session_id} disconnected")
        if session.authenticated:
            self._notify()
        return session

    def find_by_device(self, device_id) -> Optional[Session]:
        """Authenticated session bound to device_id; a peer session wins
        over a socket session left behind by the same device."""
        matches = [s for s in self._sessions.values() if s.authenticated and s.device_id == device_id]
        if not matches:
            return None
        matches.sort(key=lambda s: (s.transport_kind != TransportKind.PEER, -s.connected_at))
        return matches[0]

    def connection_info(self) -> dict:
        clients = self.authenticated_sessions()
        return {
            'connected': len(clients) > 0,
            'clientCount': len(clients),
            'clients': [
                {'id': s.session_id, 'alive': s.alive, 'transport': s.transport_kind.value,
                 'deviceId': s.device_id}
                for s in clients
            ],
        }

    def _notify(self):
        if self.on_connection_change is None:
            return
        try:
            self.on_connection_change(self.connection_info())
        except Exception as e:
            log_error(f"[Session] connection-change callback failed: {e}", exc_info=e)


class CredentialStore:
    """device-tokens.json: {deviceId: {"token": hex, "created": epoch ms}}.
    One record per device; re-issuing replaces it, invalidating deletes it."""

    def __init__(self, path):
        self.path = path
        self._lock = threading.Lock()
        self._records = self._load()

    def _load(self) -> dict:
        if os.path.exists(self.path):
            try:
                with open(self.path, "r") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    return data
                log_warning(f"[Tokens] Ignoring malformed token file {self.path}")
            except Exception as e:
                log_warning(f"[Tokens] Failed to load tokens: {e}")
        return {}

    def _save(self):
        """Caller MUST hold self._lock"""
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(self._records, f, indent=2)
            if PLATFORM != 'windows':
                os.chmod(self.path, 0o600)
        except OSError as e:
            log_error(f"[Tokens] Failed to save tokens: {e}")

    @staticmethod
    def mint_token() -> str:
        return secrets.token_hex(32)

    def save_token(self, device_id, token):
        with self._lock:
            self._records[device_id] = {"token": token, "created": int(time.time() * 1000)}
            self._save()
        log_debug(f"[Tokens] Stored token for device {device_id}")

    def get_token(self, device_id) -> Optional[str]:
        with self._lock:
            record = self._records.get(device_id)
        if isinstance(record, dict):
            return record.get("token")
        return None

    def remove_token(self, device_id) -> bool:
        with self._lock:
            if device_id not in self._records:
                return False
            del self._records[device_id]
            self._save()
        log_info(f"[Tokens] Revoked token for device {device_id}")
        return True

    def devices(self) -> List[str]:
        with self._lock:
            return list(self._records)
