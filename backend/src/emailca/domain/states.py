from enum import StrEnum


class VerificationOutcome(StrEnum):
    """Result of checking a certificate against the CA."""

    VALID = "valid"
    INVALID = "invalid"  # Well-formed but not trusted
    MALFORMED = "malformed"  # Could not be read as a certificate


class RevocationReason(StrEnum):
    """Reason codes from RFC 5280 section 5.3.1, in the hyphenated form clients send.

    Revocation accepts free text; these are the values operators are expected to use.
    """

    UNSPECIFIED = "unspecified"
    KEY_COMPROMISE = "key-compromise"
    CA_COMPROMISE = "ca-compromise"
    AFFILIATION_CHANGED = "affiliation-changed"
    SUPERSEDED = "superseded"
    CESSATION_OF_OPERATION = "cessation-of-operation"
    CERTIFICATE_HOLD = "certificate-hold"
    PRIVILEGE_WITHDRAWN = "privilege-withdrawn"
