#!/usr/bin/env -S python3 -B -u
"""
sitesim - Site Simulator Package

Starts, health-checks and tears down groups of server processes arranged
into sites with private loopback address blocks, for multi-site system tests.
"""

__version__ = '1.0.0'
__author__ = 'Site Simulator Developers'
__license__ = 'MIT'

# Package metadata
__all__ = [
    'core',
    'simulators',
]
