import re


EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


def is_valid_email(email) -> bool:
    """Loose email format check for buyer addresses."""
    if not email:
        return False
    return re.match(EMAIL_PATTERN, str(email).strip()) is not None


def sanitize_string(text, max_length=None):
    """Strip and optionally truncate a request string.

    Returns '' for None.
    """
    if text is None:
        return ''
    text = str(text).strip()
    if max_length:
        return text[:max_length]
    return text
