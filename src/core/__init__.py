"""
Core Package

Shared building blocks of the site simulator:
- Structured exceptions and error reporting
- Structured logging
- YAML configuration loading
- Deployment topology
"""
