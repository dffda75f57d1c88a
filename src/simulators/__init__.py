"""
Simulators Package

This package contains the process supervision layer of the site simulator:
- Managed server processes and their launch commands
- Sites and their generated cluster configuration
- The DNS stub
- The deployment fixture used by test suites
"""
