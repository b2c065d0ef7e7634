"""Input sanitization utilities to prevent XSS and injection attacks."""

import html


def sanitize_string(value):
    """Escape HTML entities in a string.

    Converts < > & " ' to their HTML entity equivalents so that
    user-supplied strings cannot inject markup or script tags.
    """
    if not isinstance(value, str):
        return value
    return html.escape(value, quote=True)


def _is_skipped(key, skip_keys):
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in skip_keys)


def sanitize_dict(data, skip_keys=()):
    """Recursively sanitize string values in a dict/list structure.

    Values under keys containing any of ``skip_keys`` (case-insensitive)
    are left untouched.  Non-string leaves are returned unchanged.
    """
    if isinstance(data, dict):
        return {
            key: value if _is_skipped(key, skip_keys) else sanitize_dict(value, skip_keys)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [sanitize_dict(item, skip_keys) for item in data]
    if isinstance(data, str):
        return sanitize_string(data)
    return data
