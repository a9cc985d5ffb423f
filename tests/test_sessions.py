"""SessionRegistry bookkeeping."""

from sessions import SessionRegistry, SessionState, TransportKind


class TestRegistry:
    def test_create_awaiting_auth(self):
        registry = SessionRegistry()
        session = registry.create(TransportKind.SOCKET, auth_required=True, remote_addr="10.0.0.5")
        assert session.state == SessionState.AWAITING_AUTH
        assert session.session_id in registry
        assert len(registry) == 1
        assert registry.authenticated_sessions() == []

    def test_unique_ids(self):
        registry = SessionRegistry()
        ids = {registry.create(TransportKind.SOCKET, True).session_id for _ in range(50)}
        assert len(ids) == 50

    def test_connection_change_notifications(self):
        events = []
        registry = SessionRegistry(on_connection_change=events.append)

        pending = registry.create(TransportKind.SOCKET, auth_required=True)
        assert events == []

        registry.mark_authenticated(pending.session_id, "p1")
        assert events[-1]["clientCount"] == 1
        assert events[-1]["clients"][0]["deviceId"] == "p1"

        registry.remove(pending.session_id)
        assert events[-1] == {"connected": False, "clientCount": 0, "clients": []}

    def test_removing_unauthenticated_session_is_silent(self):
        events = []
        registry = SessionRegistry(on_connection_change=events.append)
        session = registry.create(TransportKind.PEER, auth_required=True)
        assert registry.remove(session.session_id) is session
        assert session.state == SessionState.REJECTED
        assert registry.remove(session.session_id) is None
        assert events == []

    def test_rejected_is_terminal(self):
        registry = SessionRegistry()
        session = registry.create(TransportKind.SOCKET, auth_required=True)
        registry.mark_rejected(session.session_id)
        registry.mark_authenticated(session.session_id, "p1")
        assert session.state == SessionState.REJECTED
        assert not session.authenticated
        assert registry.authenticated_sessions() == []

    def test_authenticated_session_keeps_state_on_remove(self):
        registry = SessionRegistry()
        session = registry.create(TransportKind.SOCKET, auth_required=False)
        registry.remove(session.session_id)
        assert session.state == SessionState.AUTHENTICATED

    def test_callback_errors_are_contained(self):
        def boom(info):
            raise RuntimeError("listener broke")

        registry = SessionRegistry(on_connection_change=boom)
        session = registry.create(TransportKind.SOCKET, auth_required=False)
        assert session.authenticated

    def test_liveness_flags(self):
        registry = SessionRegistry()
        session = registry.create(TransportKind.SOCKET, auth_required=False)
        registry.mark_pinged(session.session_id)
        assert not session.alive
        registry.mark_seen(session.session_id)
        assert session.alive

    def test_mute_holds_never_negative(self):
        registry = SessionRegistry()
        session = registry.create(TransportKind.SOCKET, auth_required=False)
        assert registry.adjust_mute_holds(session.session_id, -1) == 0
        assert registry.adjust_mute_holds(session.session_id, 1) == 1
        assert registry.adjust_mute_holds("missing", 1) == 0

    def test_find_by_device_prefers_peer(self):
        registry = SessionRegistry()
        socket_session = registry.create(TransportKind.SOCKET, auth_required=True)
        peer_session = registry.create(TransportKind.PEER, auth_required=True)
        registry.mark_authenticated(socket_session.session_id, "p1")
        assert registry.find_by_device("p1") is socket_session

        registry.mark_authenticated(peer_session.session_id, "p1")
        assert registry.find_by_device("p1") is peer_session
        assert registry.find_by_device("p2") is None

    def test_connection_info_lists_authenticated_only(self):
        registry = SessionRegistry()
        registry.create(TransportKind.SOCKET, auth_required=True)
        peer = registry.create(TransportKind.PEER, auth_required=False)
        info = registry.connection_info()
        assert info["clientCount"] == 1
        assert info["clients"] == [{"id": peer.session_id, "alive": True, "transport": "peer", "deviceId": None}]
