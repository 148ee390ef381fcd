"""Correlation nonce for the CLEAR redirect round trip."""

import secrets

# 32 bytes = 256 bits of entropy, base64url encoded (43 chars, query-safe)
NONCE_BYTES = 32


def generate_nonce() -> str:
    """Generate a random, URL-safe nonce binding a resumption to its flow."""
    return secrets.token_urlsafe(NONCE_BYTES)
