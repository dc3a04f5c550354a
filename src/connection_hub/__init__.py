"""
Connection Hub package.

Connection lifecycle manager for external accounts: install, OAuth callback,
API-key configuration, scheduled token refresh and health evaluation.
"""

__version__ = "0.1.0"
