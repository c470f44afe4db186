"""Tests for leaf certificate issuance."""

from unittest.mock import patch

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from conftest import make_settings
from emailca.ca.authority import CA_SERIAL_NUMBER, add_years
from emailca.ca.crypto import (
    InputFormatError,
    InvalidPublicKey,
    SigningError,
    public_key_to_pem,
)
from emailca.ca.issuer import CertificateIssuer


def _load(pem: str) -> x509.Certificate:
    return x509.load_pem_x509_certificate(pem.encode("utf-8"))


class TestIssuedCertificate:
    """Tests for the contents of an issued leaf certificate."""

    def test_subject_and_issuer(self, issuer, authority, user_public_key_pem):
        issued = issuer.issue(user_public_key_pem, "alice@example.com", "Alice A")
        cert = _load(issued.certificate_pem)

        assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "Alice A"
        assert (
            cert.subject.get_attributes_for_oid(NameOID.EMAIL_ADDRESS)[0].value
            == "alice@example.com"
        )
        assert (
            cert.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value
            == "Secure Email System"
        )
        assert cert.issuer == authority.subject

    def test_binds_the_supplied_public_key(self, issuer, user_private_key, user_public_key_pem):
        issued = issuer.issue(user_public_key_pem, "alice@example.com", "Alice A")
        cert = _load(issued.certificate_pem)

        assert cert.public_key().public_numbers() == user_private_key.public_key().public_numbers()

    def test_leaf_extensions(self, issuer, user_public_key_pem):
        cert = _load(issuer.issue(user_public_key_pem, "alice@example.com", "Alice A").certificate_pem)

        basic = cert.extensions.get_extension_for_class(x509.BasicConstraints)
        assert basic.critical
        assert basic.value.ca is False

        key_usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
        assert key_usage.digital_signature
        assert key_usage.content_commitment
        assert key_usage.key_encipherment
        assert key_usage.data_encipherment
        assert not key_usage.key_cert_sign

        eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
        assert ExtendedKeyUsageOID.CLIENT_AUTH in eku
        assert ExtendedKeyUsageOID.EMAIL_PROTECTION in eku

        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert san.get_values_for_type(x509.RFC822Name) == ["alice@example.com"]

    def test_validity_is_one_year(self, issuer, user_public_key_pem):
        issued = issuer.issue(user_public_key_pem, "alice@example.com", "Alice A")
        cert = _load(issued.certificate_pem)

        assert cert.not_valid_before_utc == issued.not_before
        assert cert.not_valid_after_utc == issued.expires_at
        assert issued.expires_at == add_years(issued.not_before, 1)

    def test_serial_text_form_matches_certificate(self, issuer, user_public_key_pem):
        issued = issuer.issue(user_public_key_pem, "alice@example.com", "Alice A")
        cert = _load(issued.certificate_pem)

        assert len(issued.serial_number) == 32
        assert int(issued.serial_number, 16) == cert.serial_number
        assert cert.serial_number != CA_SERIAL_NUMBER
        assert len(issued.thumbprint) == 64

    def test_serials_differ_between_certificates(self, issuer, user_public_key_pem):
        serials = {
            issuer.issue(user_public_key_pem, f"user{i}@example.com", f"User {i}").serial_number
            for i in range(20)
        }
        assert len(serials) == 20

    def test_random_serial_never_equals_ca_serial(self, issuer):
        with patch(
            "emailca.ca.issuer.generate_serial_number",
            side_effect=[CA_SERIAL_NUMBER, CA_SERIAL_NUMBER, 0xBEEF],
        ):
            assert issuer._new_serial() == 0xBEEF

    def test_explicit_serial(self, issuer, user_public_key_pem):
        issued = issuer.issue(
            user_public_key_pem, "alice@example.com", "Alice A", serial_number=0xABC
        )
        assert issued.serial_number == "abc".rjust(32, "0")

    @pytest.mark.parametrize("serial", [CA_SERIAL_NUMBER, 0, -5])
    def test_reserved_serial_rejected(self, issuer, user_public_key_pem, serial):
        with pytest.raises(InputFormatError, match="reserved or invalid"):
            issuer.issue(user_public_key_pem, "alice@example.com", "Alice A", serial_number=serial)

    def test_unicode_display_name_kept_verbatim(self, issuer, user_public_key_pem):
        cert = _load(issuer.issue(user_public_key_pem, "zoe@example.com", "Zoë Ødegård").certificate_pem)
        assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "Zoë Ødegård"


class TestIssuanceErrors:
    """Tests for rejected issuance requests."""

    @pytest.mark.parametrize(
        "public_key_pem",
        [
            "",
            "not a pem",
            "-----BEGIN PUBLIC KEY-----\nAAAA\n-----END PUBLIC KEY-----\n",
        ],
    )
    def test_invalid_public_key(self, issuer, public_key_pem):
        with pytest.raises(InvalidPublicKey):
            issuer.issue(public_key_pem, "alice@example.com", "Alice A")

    def test_ec_public_key_rejected(self, issuer):
        ec_pem = public_key_to_pem(ec.generate_private_key(ec.SECP256R1()).public_key())

        with pytest.raises(InvalidPublicKey, match="RSA"):
            issuer.issue(ec_pem, "alice@example.com", "Alice A")

    @pytest.mark.parametrize("email", ["", "not-an-email", "alice@", "ålice@example.com"])
    def test_invalid_email(self, issuer, user_public_key_pem, email):
        with pytest.raises(InputFormatError):
            issuer.issue(user_public_key_pem, email, "Alice A")

    @pytest.mark.parametrize("name", ["", "   ", "x" * 65])
    def test_invalid_display_name(self, issuer, user_public_key_pem, name):
        with pytest.raises(InputFormatError):
            issuer.issue(user_public_key_pem, "alice@example.com", name)

    def test_email_syntax_check_can_be_disabled(self, authority, user_public_key_pem):
        lenient = CertificateIssuer(authority, make_settings(VALIDATE_EMAIL_SYNTAX=False))

        issued = lenient.issue(user_public_key_pem, "not-an-email", "Alice A")

        assert issued.certificate_pem.startswith("-----BEGIN CERTIFICATE-----")

    def test_signing_failure_raises_signing_error(self, issuer, user_public_key_pem):
        with patch("emailca.ca.issuer.x509.CertificateBuilder") as mock_builder:
            mock_builder.return_value.subject_name.side_effect = RuntimeError("hsm offline")

            with pytest.raises(SigningError, match="hsm offline"):
                issuer.issue(user_public_key_pem, "alice@example.com", "Alice A")

    def test_failures_are_counted(self, issuer, user_public_key_pem):
        with patch("emailca.ca.issuer.ca_metrics") as mock_metrics:
            with pytest.raises(InputFormatError):
                issuer.issue(user_public_key_pem, "", "Alice A")

        mock_metrics.record_issuance_failure.assert_called_once_with("input_format")
