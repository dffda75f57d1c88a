#!/usr/bin/env -S python3 -B -u
"""
Shared helpers for the sitesim test suite.

Process-level tests run tests/fake_service.py in place of the real
binaries, on free ports and with a fast readiness cadence.
"""

import socket
import sys
import unittest
from pathlib import Path

from sitesim.core.config_loader import SiteSimConfig

FAKE_SERVICE = str(Path(__file__).resolve().parent / 'fake_service.py')


def free_port() -> int:
    """A TCP port nothing is listening on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def loopback_block_available(ip: str = '127.0.1.1') -> bool:
    """Whether addresses outside 127.0.0.1 can be bound on this host."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((ip, 0))
        return True
    except OSError:
        return False


def require_loopback_block(ip: str = '127.0.1.1') -> None:
    if not loopback_block_available(ip):
        raise unittest.SkipTest(f"Cannot bind {ip} on this host")


def fake_binary(*extra):
    return [sys.executable, FAKE_SERVICE] + list(extra)


def fake_config(ignore_sigterm: bool = False, **overrides) -> SiteSimConfig:
    """
    Configuration that launches the fake service for every role.

    Each role gets its own free port. The coordinator binary is given
    the port explicitly, since the real one has no port option.
    """
    extra = ['--ignore-sigterm'] if ignore_sigterm else []
    ports = {
        'cache': free_port(),
        'coordinator': free_port(),
        'timer': free_port(),
        'dns': free_port(),
    }
    config = {
        'binaries': {
            'cache': fake_binary(*extra),
            'coordinator': fake_binary('--port', str(ports['coordinator']), *extra),
            'timer': fake_binary(*extra),
            'dns': fake_binary(*extra),
        },
        'ports': ports,
        'readiness': {
            'initial_delay': 0.01,
            'interval': 0.1,
            'attempts': 30,
        },
        'process': {
            'stop_timeout': 5.0,
        },
    }
    for section, values in overrides.items():
        config.setdefault(section, {}).update(values)
    return SiteSimConfig(overrides=config)
