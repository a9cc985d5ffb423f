#!/usr/bin/env python3
"""
Preflight checks for the keymote host.

Runs before the server starts to verify dependencies and the desktop
environment the actuators need.

Philosophy:
- Never crash silently
- Degrade gracefully when optional features are missing
- Exit early with clear error messages when required features are missing
- Print a startup summary showing what's available
"""

import sys
import os
import shutil
import importlib
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Dict

from remote_common import PLATFORM, get_display_server

MIN_PYTHON = (3, 10)


# =============================================================================
# Dependency Classification
# =============================================================================

class DepType(Enum):
    REQUIRED = "required"        # Host cannot run without this
    OPTIONAL = "optional"        # Feature disabled if missing


@dataclass
class Dependency:
    name: str
    dep_type: DepType
    import_name: str
    fallback: Optional[str] = None
    install_hint: Optional[str] = None


@dataclass
class DependencyStatus:
    name: str
    dep_type: DepType
    available: bool
    version: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PreflightResult:
    platform: str = "unknown"
    display_server: str = "unknown"
    python_version: str = ""
    has_ffmpeg: bool = False
    has_mute_tool: bool = False

    dependencies: Dict[str, DependencyStatus] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def has_required_failures(self) -> bool:
        if self.errors:
            return True
        return any(s.dep_type == DepType.REQUIRED and not s.available
                   for s in self.dependencies.values())

    def add_warning(self, msg: str):
        self.warnings.append(msg)

    def add_error(self, msg: str):
        self.errors.append(msg)


DEPENDENCIES = [
    Dependency("fastapi", DepType.REQUIRED, "fastapi", install_hint="pip install fastapi"),
    Dependency("uvicorn", DepType.REQUIRED, "uvicorn", install_hint="pip install uvicorn[standard]"),
    Dependency("qrcode", DepType.REQUIRED, "qrcode", install_hint="pip install qrcode"),
    Dependency("pynput", DepType.OPTIONAL, "pynput",
               fallback="Keyboard and mouse injection disabled", install_hint="pip install pynput"),
    Dependency("aiortc", DepType.OPTIONAL, "aiortc",
               fallback="Peer (WebRTC) transport disabled, WebSocket still works",
               install_hint="pip install aiortc"),
    Dependency("cryptography", DepType.OPTIONAL, "cryptography",
               fallback="TLS certificate generation disabled", install_hint="pip install cryptography"),
]


def check_dependency(dep: Dependency, result: PreflightResult) -> bool:
    """Check a single dependency, return True if available"""
    try:
        module = importlib.import_module(dep.import_name)
    except ImportError as e:
        result.dependencies[dep.name] = DependencyStatus(dep.name, dep.dep_type, False, error=str(e))
        if dep.dep_type == DepType.REQUIRED:
            result.add_error(f"Required: {dep.name} not installed. {dep.install_hint or ''}")
        elif dep.fallback:
            result.add_warning(f"{dep.name} not available: {dep.fallback}")
        return False

    version = getattr(module, '__version__', None)
    if version is None:
        try:
            from importlib.metadata import version as get_version
            version = get_version(dep.name)
        except Exception:
            version = 'unknown'
    result.dependencies[dep.name] = DependencyStatus(dep.name, dep.dep_type, True, version=str(version))
    return True


def check_tools(result: PreflightResult):
    result.has_ffmpeg = shutil.which('ffmpeg') is not None
    if not result.has_ffmpeg:
        result.add_warning("ffmpeg not found: screen streaming disabled")

    if PLATFORM == 'linux':
        result.has_mute_tool = shutil.which('pactl') is not None
        if not result.has_mute_tool:
            result.add_warning("pactl not found: host mute during audio share disabled")
        if result.display_server == 'wayland':
            result.add_warning("Wayland session: pynput injection and x11grab may not work, use an X11 session")
        elif not os.environ.get('DISPLAY'):
            result.add_warning("DISPLAY not set: input injection and screen capture need an X11 display")
    elif PLATFORM == 'macos':
        result.has_mute_tool = shutil.which('osascript') is not None
        result.add_warning("macOS: grant Accessibility and Screen Recording permission to the terminal")
    else:
        result.add_warning(f"Host mute not supported on {PLATFORM}")


def print_summary(result: PreflightResult):
    print()
    print("=" * 70)
    print("                    keymote PREFLIGHT CHECK")
    print("=" * 70)
    print(f"  OS:              {result.platform}")
    if result.platform == 'linux':
        print(f"  Display:         {result.display_server}")
    print(f"  Python:          {result.python_version}")
    print(f"  ffmpeg:          {'found' if result.has_ffmpeg else 'missing'}")
    print()

    for status in result.dependencies.values():
        if status.available:
            print(f"  [OK] {status.name} {status.version or ''}")
        elif status.dep_type == DepType.REQUIRED:
            print(f"  [XX] {status.name} - NOT INSTALLED")
        else:
            print(f"  [!!] {status.name} - not installed")
    print()

    if result.warnings:
        print(f"  WARNINGS ({len(result.warnings)})")
        for w in result.warnings:
            print(f"  {w}")
        print()

    if result.has_required_failures():
        print("  STATUS: FATAL - Missing required dependencies")
    elif result.warnings:
        print("  STATUS: DEGRADED - Running with reduced capabilities")
    else:
        print("  STATUS: READY - All systems operational")
    print("=" * 70)
    print()


def run(verbose: bool = True) -> PreflightResult:
    result = PreflightResult()
    result.python_version = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    if sys.version_info < MIN_PYTHON:
        result.add_error(f"Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ required, found {result.python_version}")

    result.platform = PLATFORM
    result.display_server = get_display_server()

    for dep in DEPENDENCIES:
        check_dependency(dep, result)
    check_tools(result)

    if verbose:
        print_summary(result)
        if result.has_required_failures():
            for dep in DEPENDENCIES:
                status = result.dependencies.get(dep.name)
                if status and not status.available and dep.dep_type == DepType.REQUIRED:
                    print(f"  To fix: {dep.install_hint}")
    return result


if __name__ == "__main__":
    sys.exit(1 if run().has_required_failures() else 0)
