import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from cryptography import x509  # noqa: E402
from cryptography.hazmat.primitives import hashes, serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from cryptography.x509.oid import NameOID  # noqa: E402

from emailca.ca.authority import CertificateAuthority  # noqa: E402
from emailca.ca.crypto import certificate_to_pem, public_key_to_pem  # noqa: E402
from emailca.ca.issuer import CertificateIssuer  # noqa: E402
from emailca.domain import models  # noqa: E402, F401
from shared.config import Settings  # noqa: E402
from shared.database import Base, build_engine, build_session_factory  # noqa: E402


def make_settings(**overrides) -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    values = {
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "CA_KEY_PATH": None,
        "CA_CERT_PATH": None,
        "CA_KEY_PEM": None,
        "CA_CERT_PEM": None,
        "CA_KEY_ENCRYPTION_KEY": None,
        "OPERATOR_API_KEY_HASH": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def negative_serial_pem(private_key: rsa.RSAPrivateKey) -> str:
    """Self-signed certificate whose DER serial is re-encoded as -123.

    The builder refuses non-positive serials, so the single serial byte is
    flipped after signing. Loading it emits a DeprecationWarning.
    """
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Negative Serial")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(5)
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=1))
        .sign(private_key, hashes.SHA256())
    )
    der = cert.public_bytes(serialization.Encoding.DER)
    negative = der.replace(b"\x02\x01\x05", b"\x02\x01\x85", 1)
    assert negative != der
    return certificate_to_pem(x509.load_der_x509_certificate(negative))


@pytest.fixture(scope="session")
def ca_settings() -> Settings:
    return make_settings()


@pytest.fixture(scope="session")
def authority(ca_settings) -> CertificateAuthority:
    """In-memory CA shared by the session. Tests must not re-initialize it."""
    ca = CertificateAuthority(ca_settings)
    ca.load_or_generate()
    return ca


@pytest.fixture(scope="session")
def issuer(authority, ca_settings) -> CertificateIssuer:
    return CertificateIssuer(authority, ca_settings)


@pytest.fixture(scope="session")
def user_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def user_public_key_pem(user_private_key) -> str:
    return public_key_to_pem(user_private_key.public_key())


@pytest_asyncio.fixture
async def db_session():
    """Fresh in-memory SQLite database per test."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = build_session_factory(engine)
    async with session_factory() as session:
        yield session

    await engine.dispose()
