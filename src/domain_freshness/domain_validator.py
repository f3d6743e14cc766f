"""
Domain normalization.

Every key the freshness system writes ("{domain}:{section}", access ledger
entries, guard locks) is built from the canonical form produced here, so a
mixed-case or padded name never escapes deduplication.
"""

import re
from typing import Optional

import idna

from .exceptions import ValidationError


# Control characters, whitespace and symbols that never appear in a hostname
FORBIDDEN_CHARS_PATTERN = re.compile(
    r'[\x00-\x1f\x7f'
    r'\s'
    r'!@#$%^&*()+=\[\]{}|\\:;"\'<>,?/`~]'
)


def normalize_domain(raw_domain: str) -> str:
    """
    Convert a domain to canonical form (trimmed, lowercase, IDNA-encoded).

    Args:
        raw_domain: Domain as received from a caller

    Returns:
        Canonical domain string

    Raises:
        ValidationError: If the input is empty, contains forbidden characters
            or cannot be IDNA-encoded
    """
    if raw_domain is None or not str(raw_domain).strip():
        raise ValidationError(
            code="empty_input",
            message="Domain input is empty",
            details={"raw_input": raw_domain},
        )

    domain = str(raw_domain).strip().lower().rstrip(".")

    if FORBIDDEN_CHARS_PATTERN.search(domain):
        raise ValidationError(
            code="forbidden_chars",
            message="Domain contains forbidden characters",
            details={
                "raw_input": raw_domain,
                "forbidden_chars": FORBIDDEN_CHARS_PATTERN.findall(domain),
            },
        )

    if any(ord(c) > 127 for c in domain):
        try:
            domain = idna.encode(domain, uts46=True).decode("ascii")
        except idna.IDNAError as e:
            raise ValidationError(
                code="idna_error",
                message=f"IDNA encoding failed: {e}",
                details={"domain": raw_domain, "idna_error": str(e)},
            ) from e

    return domain


def extract_tld(domain: str) -> Optional[str]:
    """
    Extract the TLD from a canonical domain.

    Returns:
        TLD string (e.g., 'com') or None for single-label names
    """
    if not domain or "." not in domain:
        return None
    tld = domain.rsplit(".", 1)[1]
    return tld.lower() or None
