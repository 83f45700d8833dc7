import secrets

# 32 bytes of entropy, 43 URL-safe characters.
TOKEN_BYTES = 32


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def generate_envelope_secret() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def tokens_match(expected: str | None, presented: str | None) -> bool:
    """Constant-time token comparison; a missing value never matches."""
    if not expected or not presented:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def token_prefix(token: str) -> str:
    return token[:8] + "..."
