"""Anti-SQLi, anti-XSS and anti-prompt-injection scrubbing for request bodies."""
import json
import re

REDACTED = "[SEC_REDACTED]"

# Order matters: earlier patterns are replaced before later ones are tried.
MALICIOUS_PATTERNS = [
    re.compile(r"<script.*?>.*?</script>", re.IGNORECASE),
    re.compile(r"UNION\s+SELECT", re.IGNORECASE),
    re.compile(r"OR\s+['\"]?\d+['\"]?\s*=\s*['\"]?\d+", re.IGNORECASE),
    re.compile(r"DROP\s+TABLE", re.IGNORECASE),
    re.compile(r"truncate\s+table", re.IGNORECASE),
    re.compile(r"delete\s+from", re.IGNORECASE),
    re.compile(r"update\s+.*\s+set", re.IGNORECASE),
    re.compile(r";\s*--"),
    re.compile(r"\[IGNORE\s+PREVIOUS\s+INSTRUCTIONS\]", re.IGNORECASE),
    re.compile(r"system\s+prompt", re.IGNORECASE),
    re.compile(r"DAN\s+mode", re.IGNORECASE),
    re.compile(r"xp_cmdshell", re.IGNORECASE),
    re.compile(r"exec\(", re.IGNORECASE),
    re.compile(r"base64_decode", re.IGNORECASE),
]

HTML_ESCAPES = [
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#039;"),
]


def sanitize_input(value):
    """Redact known attack signatures, then HTML-escape.

    Non-strings are returned untouched. Not idempotent: '&' becomes '&amp;'
    and a second pass turns that into '&amp;amp;', so sanitize exactly once.
    """
    if not isinstance(value, str):
        return value
    sanitized = value
    for pattern in MALICIOUS_PATTERNS:
        sanitized = pattern.sub(REDACTED, sanitized)
    for char, entity in HTML_ESCAPES:
        sanitized = sanitized.replace(char, entity)
    return sanitized


def sanitize_object(value):
    """Recursively sanitize every string inside a JSON-compatible value."""
    if isinstance(value, list):
        return [sanitize_object(item) for item in value]
    if isinstance(value, dict):
        return {key: sanitize_object(item) for key, item in value.items()}
    return sanitize_input(value)


def contains_redaction(value) -> bool:
    if isinstance(value, str):
        return REDACTED in value
    return REDACTED in json.dumps(value, ensure_ascii=False, default=str)
