"""Credential storage for tokens and client registrations."""

from .registration_store import ClientRegistration, RegistrationStore
from .secure_file import generate_encryption_key
from .token_store import Token, TokenCache, TokenStore

__all__ = [
    "ClientRegistration",
    "RegistrationStore",
    "Token",
    "TokenCache",
    "TokenStore",
    "generate_encryption_key",
]
