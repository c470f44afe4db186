"""Certificate Authority module for the secure email CA.

This module provides:
- CA identity management (loading, generation, storage)
- Leaf certificate issuance for user public keys
- Chain verification against the CA trust anchor
- Key material utilities (PEM handling, serials, at-rest encryption)
"""

from emailca.ca.authority import CertificateAuthority
from emailca.ca.issuer import CertificateIssuer
from emailca.ca.verifier import ChainVerifier

__all__ = ["CertificateAuthority", "CertificateIssuer", "ChainVerifier"]
