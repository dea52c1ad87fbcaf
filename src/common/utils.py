def normalize_email(email: str) -> str:
    """Canonical form used for uniqueness checks: trimmed and lowercased."""
    return email.strip().lower()


def mask_email(email: str) -> str:
    """Mask the local part of an email address for display in logs.

    Example:
        >>> mask_email("jane.doe@example.com")
        'j***@example.com'
    """
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"
