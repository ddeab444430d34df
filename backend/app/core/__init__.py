"""Core utilities for the Conecta backend."""

from .security import JwtCredentialVerifier, create_access_token, decode_access_token

__all__ = ["JwtCredentialVerifier", "create_access_token", "decode_access_token"]
