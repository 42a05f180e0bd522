"""
f2bctl - Control Plane for Fail2ban Installations

This package provides the core implementation of f2bctl, including:
- Variable resolution across fail2ban's layered configuration files
- Filter include merging for local regex testing
- Connectors for local, SSH and HTTP-agent managed hosts
- Ban/unban callback ingestion and live event broadcasting
"""

__version__ = "0.1.0"
__author__ = "f2bctl Contributors"
