from backend.src.emailca.api.certificates import (
    get_ca_certificate,
    get_revocation_list,
    issue_certificate,
    revoke_certificate,
    verify_certificate,
)
from backend.src.emailca.api.schemas import RevocationEntryResponse
from backend.src.emailca.ca.authority import CertificateAuthority
from backend.src.emailca.domain.models import IssuedCertificateRecord, RevocationEntry
from backend.src.emailca.domain.states import RevocationReason
from backend.src.emailca.metrics import ca_loaded_gauge
from backend.src.main import health_check, lifespan
from backend.src.shared.config import Settings
from backend.src.shared.database import get_db_context

# Pydantic Settings
Settings.model_config
Settings.APP_ENV
Settings.CA_KEY_SIZE
Settings.CA_VALIDITY_YEARS
Settings.LEAF_VALIDITY_YEARS

# FastAPI route handlers are registered by decorator
get_ca_certificate
issue_certificate
verify_certificate
revoke_certificate
get_revocation_list
health_check
lifespan

# ORM columns read by Alembic and the API layer
RevocationEntry.entry_id
IssuedCertificateRecord.certificate_id
IssuedCertificateRecord.issued_at
RevocationEntryResponse.model_config

# Operator-facing helpers
CertificateAuthority.ca_info
RevocationReason.KEY_COMPROMISE
RevocationReason.CA_COMPROMISE
RevocationReason.AFFILIATION_CHANGED
RevocationReason.SUPERSEDED
RevocationReason.CESSATION_OF_OPERATION
RevocationReason.CERTIFICATE_HOLD
RevocationReason.PRIVILEGE_WITHDRAWN

# Observable gauge is polled by the metric reader
ca_loaded_gauge
get_db_context
