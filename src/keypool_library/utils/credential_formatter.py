"""
Utility for formatting API key secrets for display in logs.

Secrets are never logged in full. Only the last few characters are shown so
an operator can match a log line to the key in the upstream console.
"""


def mask_secret(secret: str, visible: int = 4) -> str:
    """
    Format a secret for display in logs.

    Args:
        secret: The API key value
        visible: How many trailing characters to keep

    Returns:
        A display-safe string representation of the secret

    Examples:
        >>> mask_secret("AIzaSyD-1234567890abcdef")
        "...cdef"
        >>> mask_secret("abc")
        "..."
    """
    if not secret or len(secret) <= visible:
        return "..."
    return f"...{secret[-visible:]}"
