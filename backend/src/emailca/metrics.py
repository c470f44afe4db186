"""OpenTelemetry metrics for the CA."""

from collections.abc import Iterator

from opentelemetry import metrics

meter = metrics.get_meter("emailca")

# ============================================================================
# Issuance
# ============================================================================

certificates_issued_total = meter.create_counter(
    name="emailca_certificates_issued_total",
    description="Total leaf certificates issued",
    unit="1",
)

certificate_issuance_duration = meter.create_histogram(
    name="emailca_certificate_issuance_duration_seconds",
    description="Leaf certificate build and sign duration in seconds",
    unit="s",
)

serial_collisions_total = meter.create_counter(
    name="emailca_serial_collisions_total",
    description="Serial numbers rejected by the unique constraint and retried",
    unit="1",
)

issuance_failures_total = meter.create_counter(
    name="emailca_issuance_failures_total",
    description="Failed issuance attempts by error type",
    unit="1",
)

# ============================================================================
# Verification and revocation
# ============================================================================

certificate_verifications_total = meter.create_counter(
    name="emailca_certificate_verifications_total",
    description="Total chain verifications by outcome",
    unit="1",
)

certificates_revoked_total = meter.create_counter(
    name="emailca_certificates_revoked_total",
    description="Total certificates revoked",
    unit="1",
)

revocation_checks_total = meter.create_counter(
    name="emailca_revocation_checks_total",
    description="Total revocation lookups",
    unit="1",
)

# ============================================================================
# CA lifecycle
# ============================================================================

ca_initializations_total = meter.create_counter(
    name="emailca_ca_initializations_total",
    description="CA identities generated in this process",
    unit="1",
)

_ca_storage_type: str | None = None


def _get_ca_loaded(
    options: metrics.CallbackOptions,
) -> Iterator[metrics.Observation]:
    """Callback to report whether a CA identity is held in memory."""
    if _ca_storage_type:
        yield metrics.Observation(1, {"storage_type": _ca_storage_type})
    else:
        yield metrics.Observation(0, {"storage_type": "none"})


ca_loaded_gauge = meter.create_observable_gauge(
    name="emailca_ca_loaded",
    description="CA identity loaded (1=yes, 0=no)",
    unit="1",
    callbacks=[_get_ca_loaded],
)


class CAMetrics:
    """Facade for CA metrics with proper labels."""

    def record_certificate_issued(self, duration_seconds: float) -> None:
        certificates_issued_total.add(1)
        certificate_issuance_duration.record(duration_seconds)

    def record_serial_collision(self) -> None:
        serial_collisions_total.add(1)

    def record_issuance_failure(self, error_type: str) -> None:
        """Labels: error=invalid_public_key|input_format|signing|serial_collision"""
        issuance_failures_total.add(1, {"error": error_type})

    def record_verification(self, outcome: str) -> None:
        """Labels: outcome=valid|invalid|malformed"""
        certificate_verifications_total.add(1, {"outcome": outcome})

    def record_certificate_revoked(self, reason: str) -> None:
        certificates_revoked_total.add(1, {"reason": reason})

    def record_revocation_check(self, result: str) -> None:
        """Labels: result=revoked|not_revoked"""
        revocation_checks_total.add(1, {"result": result})

    def record_ca_initialized(self) -> None:
        ca_initializations_total.add(1)

    def record_ca_loaded(self, storage_type: str) -> None:
        """Record the CA identity's source: file, env or generated."""
        global _ca_storage_type
        _ca_storage_type = storage_type


# Singleton instance
ca_metrics = CAMetrics()
