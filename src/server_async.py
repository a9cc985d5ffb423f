#!/usr/bin/env python3
"""
Keymote host server (Async)
FastAPI + uvicorn + WebSocket / WebRTC data-channel input sessions

Run: python server_async.py [--pin 123456 | --no-pin]
"""

import asyncio
import ipaddress
import json
import os
import platform
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional, Protocol

from fastapi import APIRouter, FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, Response
import qrcode
import qrcode.image.svg
import uvicorn

from remote_common import (
    ServerSettings, _task_done, generate_pin, get_local_ip, get_server_id,
    load_settings, save_settings, setup_logging,
    log_debug, log_info, log_warning,
)
from auth_gate import AuthGate
from command_translator import CommandTranslator, MuteController
from frame_broadcaster import FfmpegScreenSource, FrameBroadcaster, ScreenSource
from liveness import HeartbeatMonitor
from sessions import CredentialStore, SessionRegistry
from transport import PeerTransport, SocketTransport, TransportRouter
from worker_process import WorkerProcessManager

SERVICE_NAME = "keymote"
WORKER_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "actuator_worker.py")

# =============================================================================
#                         EXTERNAL COLLABORATORS
# =============================================================================

class DiscoveryService(Protocol):
    """LAN service advertisement (mDNS or similar)."""

    def start(self) -> dict:
        """Begin advertising; returns {"ip": ..., "port": ...}."""

    def stop(self):
        ...


class TunnelService(Protocol):
    """VPN / tunnel helper that makes the host reachable off-LAN."""

    async def connect(self):
        ...

    async def disconnect(self):
        ...

    def get_status(self) -> dict:
        ...

# =============================================================================
#                              HOST
# =============================================================================

def build_workers(settings: ServerSettings) -> Dict[str, WorkerProcessManager]:
    """One actuator process manager per capability, all running actuator_worker.py"""
    def manager(kind, tokens):
        return WorkerProcessManager(
            kind, [sys.executable, WORKER_SCRIPT, kind],
            success_tokens=tokens,
            response_timeout=settings.worker_response_timeout,
            ready_timeout=settings.worker_ready_timeout,
            max_restarts=settings.worker_max_restarts,
        )
    return {
        'keyboard': manager('keyboard', ("OK",)),
        'mouse': manager('mouse', ("OK",)),
        'mute': manager('mute', ("MUTED", "UNMUTED")),
    }


class Host:
    """Wires the pipeline together and owns every long-lived component."""

    def __init__(self, settings: ServerSettings, workers=None, screen_source: Optional[ScreenSource] = None,
                 discovery: Optional[DiscoveryService] = None, tunnel: Optional[TunnelService] = None):
        self.settings = settings
        self.workers = workers if workers is not None else build_workers(settings)
        self.discovery = discovery
        self.tunnel = tunnel

        self.registry = SessionRegistry(on_connection_change=self._on_connection_change)
        self.credentials = CredentialStore(settings.tokens_path)
        self.auth = AuthGate(self.registry, self.credentials, settings.pin, settings.computer_name)
        self.translator = CommandTranslator(self.workers['keyboard'], self.workers['mouse'])
        self.mute = MuteController(self.workers['mute'])
        self.router = TransportRouter(self.registry, self.auth, self.translator, self.mute)
        self.broadcaster = FrameBroadcaster(self.router, screen_source, settings.fps)
        self.router.on_screen_request = self.broadcaster.handle_request
        self.heartbeat = HeartbeatMonitor(self.router, settings.heartbeat_interval)
        self.peer_connections = set()

    def _on_connection_change(self, info):
        log_info(f"[Host] {info['clientCount']} client(s) authenticated")

    async def startup(self):
        self.heartbeat.start()
        if self.discovery is not None:
            try:
                advertised = self.discovery.start()
                log_info(f"[Discovery] Advertising at {advertised.get('ip')}:{advertised.get('port')}")
            except Exception as e:
                log_warning(f"[Discovery] Failed to start: {e}")
        log_info("Server ready")

    async def shutdown(self):
        log_info("[Shutdown] Starting graceful shutdown...")
        await self.broadcaster.stop()
        await self.heartbeat.stop()
        await self.router.close_all()
        for pc in list(self.peer_connections):
            await pc.close()
        self.peer_connections.clear()
        # Unmute before anything else touches the workers
        await self.mute.cleanup()
        for name in ('keyboard', 'mouse'):
            await self.workers[name].stop()
        if self.discovery is not None:
            try:
                self.discovery.stop()
            except Exception as e:
                log_warning(f"[Discovery] stop failed: {e}")
        log_info("Server stopped")

    async def accept_peer_offer(self, sdp: str, sdp_type: str = "offer", remote_addr: str = ""):
        """Answer a WebRTC offer; every data channel the phone opens becomes a session."""
        from aiortc import RTCPeerConnection, RTCSessionDescription

        pc = RTCPeerConnection()
        self.peer_connections.add(pc)

        @pc.on("datachannel")
        def _on_datachannel(channel):
            log_info(f"[Peer] Data channel '{channel.label}' from {remote_addr or 'unknown'}")
            task = asyncio.create_task(self.router.serve(PeerTransport(channel, pc, remote_addr)))
            task.add_done_callback(_task_done)

        @pc.on("connectionstatechange")
        async def _on_state():
            log_debug(f"[Peer] connectionState -> {pc.connectionState}")
            if pc.connectionState in ("failed", "closed"):
                self.peer_connections.discard(pc)
                await pc.close()

        await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        return pc.localDescription

    def status(self) -> dict:
        info = self.router.get_connection_info()
        info['streaming'] = self.broadcaster.is_running()
        info['fps'] = self.broadcaster.fps
        info['workers'] = {name: w.state.name.lower() for name, w in self.workers.items()}
        info['muted'] = self.mute.muted
        if self.tunnel is not None:
            try:
                info['tunnel'] = self.tunnel.get_status()
            except Exception as e:
                info['tunnel'] = {'error': str(e)}
        return info

# =============================================================================
#                              LAN GUARD
# =============================================================================

_LAN_NETS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("100.64.0.0/10"),  # CGNAT range used by tailnets
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fe80::/10"),      # IPv6 link-local
    ipaddress.ip_network("fc00::/7"),       # IPv6 ULA (private)
]


def is_lan_address(host) -> bool:
    try:
        ip = ipaddress.ip_address(host)
    except (TypeError, ValueError):
        log_debug(f"[LAN] Could not parse client IP '{host}'")
        return False
    # Unwrap IPv4-mapped IPv6 (::ffff:192.168.1.5 -> 192.168.1.5)
    if getattr(ip, 'ipv4_mapped', None):
        ip = ip.ipv4_mapped
    return any(ip in net for net in _LAN_NETS)


async def lan_only_middleware(request: Request, call_next):
    """Reject non-LAN IPs when lan_only is set (RFC 1918 check)."""
    settings = request.app.state.settings
    if settings.lan_only and request.client and not is_lan_address(request.client.host):
        return Response(status_code=403)
    response = await call_next(request)
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response

# =============================================================================
#                              ENDPOINTS
# =============================================================================

api = APIRouter()


@api.get("/api/discover")
async def api_discover(request: Request):
    """LAN discovery endpoint, no auth required, returns service identity"""
    settings = request.app.state.settings
    return {
        "service": SERVICE_NAME,
        "name": settings.computer_name,
        "port": settings.port,
        "os": platform.system(),
        "server_id": get_server_id(settings.config_dir),
        "authRequired": settings.auth_required,
    }


@api.get("/api/status")
async def api_status(request: Request):
    return request.app.state.host.status()


@api.post("/api/peer/offer")
async def api_peer_offer(request: Request):
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(body, dict) or not body.get("sdp"):
        return JSONResponse({"error": "Missing sdp"}, status_code=400)
    host = request.app.state.host
    remote = request.client.host if request.client else ""
    try:
        answer = await host.accept_peer_offer(body["sdp"], body.get("type", "offer"), remote)
    except Exception as e:
        log_warning(f"[Peer] Offer from {remote} rejected: {e}")
        return JSONResponse({"error": "Invalid offer"}, status_code=400)
    return {"sdp": answer.sdp, "type": answer.type}


async def ws_remote(ws: WebSocket):
    """Socket transport: one session per WebSocket connection"""
    settings = ws.app.state.settings
    if settings.lan_only and ws.client and not is_lan_address(ws.client.host):
        await ws.close(code=4403)
        return
    await ws.accept()
    await ws.app.state.host.router.serve(SocketTransport(ws))


api.add_api_websocket_route("/ws", ws_remote)
api.add_api_websocket_route("/", ws_remote)


@asynccontextmanager
async def lifespan(app: FastAPI):
    host = app.state.host
    await host.startup()
    try:
        yield
    finally:
        await host.shutdown()


def create_app(settings: Optional[ServerSettings] = None, **host_kwargs) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.host = Host(settings, **host_kwargs)
    app.middleware("http")(lan_only_middleware)
    app.include_router(api)
    return app

# =============================================================================
#                              TLS / QR
# =============================================================================

def generate_ssl_certs(cert_path, key_path):
    """Generate a self-signed certificate for localhost and the LAN IP"""
    from cryptography import x509
    from cryptography.x509.oid import NameOID
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa
    import datetime

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Keymote"),
        x509.NameAttribute(NameOID.COMMON_NAME, "localhost"),
    ])
    san_list = [
        x509.DNSName("localhost"),
        x509.IPAddress(ipaddress.IPv4Address("127.0.0.1")),
        x509.IPAddress(ipaddress.IPv6Address("::1")),
    ]
    local_ip = get_local_ip()
    try:
        san_list.append(x509.IPAddress(ipaddress.IPv4Address(local_ip)))
    except ValueError as e:
        log_warning(f"Could not add local IP to SSL SAN list: {e}")

    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=365))
        .add_extension(x509.SubjectAlternativeName(san_list), critical=False)
        .sign(key, hashes.SHA256())
    )

    os.makedirs(os.path.dirname(cert_path) or ".", exist_ok=True)
    with open(key_path, "wb") as f:
        f.write(key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption()
        ))
    if platform.system() != 'Windows':
        os.chmod(key_path, 0o600)
    with open(cert_path, "wb") as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))
    log_info(f"Generated SSL certificates for localhost and {local_ip}")


def certs_need_regen(cert_path, key_path) -> bool:
    """Missing files, or the current LAN IP is not in the cert's SAN list (DHCP change)."""
    if not os.path.exists(cert_path) or not os.path.exists(key_path):
        return True
    try:
        from cryptography import x509
        from cryptography.x509.oid import ExtensionOID
        with open(cert_path, "rb") as f:
            cert = x509.load_pem_x509_certificate(f.read())
        san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        san_ips = [str(ip) for ip in san.value.get_values_for_type(x509.IPAddress)]
        current_ip = get_local_ip()
        if current_ip not in san_ips:
            log_info(f"IP changed: cert has {san_ips}, current is {current_ip}")
            return True
    except Exception as e:
        log_warning(f"Could not verify cert SANs ({e}), regenerating")
        return True
    return False


def pairing_payload(settings: ServerSettings, ip: str) -> str:
    scheme = "wss" if settings.tls else "ws"
    payload = {"name": settings.computer_name, "url": f"{scheme}://{ip}:{settings.port}"}
    if settings.pin:
        payload["pin"] = settings.pin
    return json.dumps(payload)


def print_qr(data, save_path=None):
    """Print QR code to console, optionally save as SVG"""
    qr = qrcode.QRCode(version=1, box_size=10, border=2)
    qr.add_data(data)
    qr.make(fit=True)
    if save_path:
        img = qr.make_image(image_factory=qrcode.image.svg.SvgImage)
        img.save(save_path)
        return save_path
    qr.print_ascii(invert=True)
    return None

# =============================================================================
#                              MAIN
# =============================================================================

def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Keymote host (FastAPI + uvicorn)")
    parser.add_argument("-p", "--port", type=int, default=None, help="Port (default: 8765)")
    parser.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--pin", default=None, help="Session PIN (default: random 6 digits)")
    parser.add_argument("--no-pin", action="store_true", help="Accept clients without a PIN")
    parser.add_argument("--name", default=None, help="Computer name shown to the phone")
    parser.add_argument("--fps", type=int, default=None, help="Screen stream FPS (1-30)")
    parser.add_argument("--tls", action="store_true", default=None, help="Serve wss:// with a self-signed cert")
    parser.add_argument("--lan-only", action="store_true", default=None, help="Reject non-LAN clients")
    parser.add_argument("--config-dir", default=None, help="Config directory (default: ~/.config/keymote)")
    parser.add_argument("--save", action="store_true", help="Persist these options to config.json")
    parser.add_argument("--qr-svg", default=None, help="Also write the pairing QR code to this SVG file")
    parser.add_argument("--skip-preflight", action="store_true", help="Skip dependency checks")
    args = parser.parse_args(argv)

    setup_logging()

    pin = None if args.no_pin else (args.pin or generate_pin())
    settings = load_settings(
        args.config_dir, port=args.port, host=args.host, pin=pin, computer_name=args.name,
        fps=args.fps, tls=args.tls, lan_only=args.lan_only,
    )
    if args.save:
        save_settings(settings)

    if not args.skip_preflight:
        import preflight
        result = preflight.run(verbose=True)
        if result.has_required_failures():
            return 1

    ssl_kwargs = {}
    if settings.tls:
        cert_path = os.path.join(settings.config_dir, 'cert.pem')
        key_path = os.path.join(settings.config_dir, 'key.pem')
        if certs_need_regen(cert_path, key_path):
            generate_ssl_certs(cert_path, key_path)
        ssl_kwargs = {"ssl_certfile": cert_path, "ssl_keyfile": key_path}

    ip = get_local_ip()
    payload = pairing_payload(settings, ip)
    print(f"\n{'=' * 50}")
    print(f"Computer: {settings.computer_name}")
    print(f"Address:  {json.loads(payload)['url']}")
    print(f"PIN:      {settings.pin or '(none)'}")
    print(f"{'=' * 50}")
    print_qr(payload)
    if args.qr_svg:
        print_qr(payload, save_path=args.qr_svg)
    print()

    app = create_app(settings, screen_source=FfmpegScreenSource(settings.fps))
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level="info",
        loop="auto",  # uvloop when installed
        ws_ping_interval=20,
        ws_ping_timeout=20,
        **ssl_kwargs,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
