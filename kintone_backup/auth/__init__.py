"""
kintone_backup.auth - Authentication module

Builds authentication headers for API-token or password access.
"""

from kintone_backup.auth.credentials import CredentialsError, KintoneCredentials

__all__ = ["CredentialsError", "KintoneCredentials"]
