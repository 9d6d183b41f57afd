"""
Identifier normalization for Threadline.

Turns raw phone numbers and email addresses, as they appear in a vCard export
or in the Messages handle table, into canonical comparable values and typed
keys such as ``phone:+12125551234``.

Phone handling is a best-effort heuristic, not E.164 validation: input is
never rejected, only canonicalized as well as the digits allow.
"""
import re
from dataclasses import dataclass

PHONE = "phone"
EMAIL = "email"
UNKNOWN = "unknown"

DEFAULT_COUNTRY_CODE = "1"

# Fuzzy reconciliation constants. These decide merge recall vs precision.
FUZZY_MATCH_THRESHOLD = 0.8
LOCAL_MATCH_SCORE = 0.9  # last 7 digits agree
FULL_MATCH_SCORE = 0.95  # last 10 digits agree

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NON_DIGIT_RE = re.compile(r"\D")


@dataclass(frozen=True)
class Identifier:
    """A classified, normalized phone number or email address."""

    raw: str
    type: str  # "phone", "email" or "unknown"
    normalized: str

    @property
    def key(self) -> str:
        """Canonical key, e.g. ``email:jane@example.com``."""
        return f"{self.type}:{self.normalized}"

    @property
    def digits(self) -> str:
        """Digits of the normalized value (empty for non-phones)."""
        if self.type != PHONE:
            return ""
        return _NON_DIGIT_RE.sub("", self.normalized)


def is_likely_email(raw: str) -> bool:
    """Check for a ``local@domain.tld`` shape."""
    if not raw:
        return False
    return bool(_EMAIL_RE.match(raw.strip()))


def is_likely_phone(raw: str) -> bool:
    """Check whether more than half of the characters are digits."""
    if not raw:
        return False
    value = raw.strip()
    if not value:
        return False
    digit_count = sum(1 for c in value if c.isdigit())
    return digit_count / len(value) > 0.5


def classify(raw: str) -> str:
    """
    Classify a raw identifier.

    Args:
        raw: Phone number, email address, or anything else

    Returns:
        "email", "phone" or "unknown"

    Examples:
        >>> classify("Jane@Example.com")
        'email'
        >>> classify("(212) 555-1234")
        'phone'
        >>> classify("not a handle")
        'unknown'
    """
    if is_likely_email(raw):
        return EMAIL
    if is_likely_phone(raw):
        return PHONE
    return UNKNOWN


def normalize_phone(raw: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Normalize a phone number to a "+<digits>" form.

    Args:
        raw: Raw phone number in any common format
        default_country_code: Country code applied when none is present

    Returns:
        Canonical phone string, or "" for empty input

    Examples:
        >>> normalize_phone("(212) 555-1234")
        '+12125551234'
        >>> normalize_phone("+44 20 7946 0958")
        '+442079460958'
        >>> normalize_phone("0044 20 7946 0958")
        '+442079460958'
        >>> normalize_phone("1-212-555-1234")
        '+12125551234'
    """
    if not raw:
        return ""

    value = raw.strip()
    digits = _NON_DIGIT_RE.sub("", value)

    if value.startswith("+"):
        return "+" + digits
    if value.startswith("00"):
        return "+" + digits[2:]

    # Long enough to already carry the country code
    if len(digits) >= 11 and digits.startswith(default_country_code):
        return "+" + digits

    return "+" + default_country_code + digits


def normalize_email(raw: str) -> str:
    """Trim and lowercase an email address."""
    if not raw:
        return ""
    return raw.strip().lower()


def create_identifier(
    raw: str,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
) -> Identifier:
    """
    Classify and normalize a raw value.

    Unclassifiable input is kept (trimmed) as its own canonical value.
    """
    raw = raw or ""
    kind = classify(raw)
    if kind == EMAIL:
        normalized = normalize_email(raw)
    elif kind == PHONE:
        normalized = normalize_phone(raw, default_country_code)
    else:
        normalized = raw.strip()
    return Identifier(raw=raw, type=kind, normalized=normalized)


def make_key(raw: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Build the canonical key for a raw identifier.

    Examples:
        >>> make_key("+1 (212) 555-1234")
        'phone:+12125551234'
        >>> make_key("")
        ''
    """
    if not raw:
        return ""
    return create_identifier(raw, default_country_code).key


def key_type(key: str) -> str:
    """Type portion of a canonical key ("phone", "email" or "unknown")."""
    if not key:
        return UNKNOWN
    if key.startswith(f"{PHONE}:"):
        return PHONE
    if key.startswith(f"{EMAIL}:"):
        return EMAIL
    return UNKNOWN


def key_value(key: str) -> str:
    """
    Value portion of a canonical key.

    Only the first colon separates type from value, so values containing
    colons survive. Strings that are not keys are returned unchanged.
    """
    if not key:
        return ""
    prefix, sep, value = key.partition(":")
    if sep and prefix in (PHONE, EMAIL, UNKNOWN):
        return value
    return key


def is_key(value: str) -> bool:
    """Check whether a string already looks like a canonical key."""
    if not value:
        return False
    prefix, sep, _ = value.partition(":")
    return bool(sep) and prefix in (PHONE, EMAIL, UNKNOWN)


def score_identifier_match(a: Identifier, b: Identifier) -> float:
    """
    Fuzzy score for two identifiers whose keys differ.

    Only phone pairs can partially match: agreeing last 10 digits score
    FULL_MATCH_SCORE, agreeing last 7 digits score LOCAL_MATCH_SCORE.
    Different types, emails and unknown values score 0.
    """
    if a.type != b.type or a.type != PHONE:
        return 0.0

    digits_a = a.digits
    digits_b = b.digits

    if len(digits_a) >= 10 and len(digits_b) >= 10 and digits_a[-10:] == digits_b[-10:]:
        return FULL_MATCH_SCORE

    if len(digits_a) >= 7 and len(digits_b) >= 7 and digits_a[-7:] == digits_b[-7:]:
        return LOCAL_MATCH_SCORE

    return 0.0


def compare_identifiers(
    raw_a: str,
    raw_b: str,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
) -> float:
    """
    Similarity of two raw identifiers between 0 and 1.

    Returns 1.0 when both normalize to the same key, otherwise the fuzzy
    score from score_identifier_match.
    """
    if not raw_a or not raw_b:
        return 0.0
    a = create_identifier(raw_a, default_country_code)
    b = create_identifier(raw_b, default_country_code)
    if a.key == b.key:
        return 1.0
    return score_identifier_match(a, b)
