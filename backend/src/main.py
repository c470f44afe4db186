from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from emailca.api import certificates as certificates_api
from emailca.ca.authority import CertificateAuthority
from emailca.services.bootstrap import bootstrap_operator_key_if_needed
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from shared.config import settings
from shared.database import engine
from shared.logging import setup_logging
from shared.metrics import setup_metrics

# Global CA instance
_authority: CertificateAuthority | None = None


def setup_tracing() -> None:
    resource = Resource.create({"service.name": settings.APP_NAME})
    provider = TracerProvider(resource=resource)

    # Spans go to the console until a collector is deployed
    processor = BatchSpanProcessor(ConsoleSpanExporter())
    provider.add_span_processor(processor)

    trace.set_tracer_provider(provider)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global _authority

    # Startup
    setup_logging()
    setup_tracing()
    setup_metrics(settings.APP_NAME)

    LoggingInstrumentor().instrument(set_logging_format=True)
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    # Load or create the CA identity before serving requests
    _authority = CertificateAuthority()
    _authority.load_or_generate()
    certificates_api.set_authority(_authority)

    # Operator key for issue/revoke when no hash is configured
    bootstrap_operator_key_if_needed()

    yield


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# Instrument FastAPI
FastAPIInstrumentor.instrument_app(app)

# Include routers
app.include_router(certificates_api.router)


@app.get("/health")
async def health_check() -> dict[str, str | bool]:
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "ca_initialized": _authority is not None and _authority.is_initialized,
    }
