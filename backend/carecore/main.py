import logging
from contextlib import asynccontextmanager
from typing import Iterable, Optional

import httpx
from fastapi import APIRouter, FastAPI
from sqlalchemy.engine import Engine

from .audit.middleware import AuditMiddleware
from .audit.router import router as audit_router
from .audit.service import AuditRecorder
from .auth.idp_admin import IdentityProviderAdmin
from .auth.keys import KeyResolver
from .auth.router import router as auth_router
from .auth.service import AuthorizationCodeFlow
from .auth.tokens import TokenValidator
from .core.database import build_engine, create_db_and_tables
from .core.errors import GatewayError, gateway_error_handler
from .core.logging import configure_logging
from .core.settings import Settings, settings as default_settings
from .models.Audit import AuditLog  # Import models to register them with SQLModel
from .models.MfaEnrollment import MfaEnrollment
from .models.PractitionerVerification import PractitionerVerification
from .practitioners.router import router as practitioners_router
from .practitioners.storage import DocumentStorage

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    resource_routers: Iterable[APIRouter] = (),
) -> FastAPI:
    """
    Builds the gateway. FHIR resource routers are mounted under the API prefix
    and sit behind the same token validation, access policies and audit trail.
    """
    settings = settings or default_settings
    engine = engine or build_engine(settings.DATABASE_URL)
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=settings.IDP_TIMEOUT_SECONDS)

    key_resolver = KeyResolver(
        settings.jwks_uri,
        client,
        cache_ttl=settings.JWKS_CACHE_TTL_SECONDS,
        requests_per_minute=settings.JWKS_REQUESTS_PER_MINUTE,
        timeout=settings.IDP_TIMEOUT_SECONDS,
    )
    validator = TokenValidator(settings, key_resolver)
    recorder = AuditRecorder(engine, queue_size=settings.AUDIT_QUEUE_SIZE)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.LOG_LEVEL)
        create_db_and_tables(engine)
        await recorder.start()
        logger.info("Gateway started", extra={"environment": settings.ENVIRONMENT})
        yield
        await recorder.stop()
        if owns_client:
            await client.aclose()

    app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

    app.state.settings = settings
    app.state.engine = engine
    app.state.http_client = client
    app.state.key_resolver = key_resolver
    app.state.token_validator = validator
    app.state.auth_flow = AuthorizationCodeFlow(settings, client, validator)
    app.state.idp_admin = IdentityProviderAdmin(settings, client)
    app.state.audit_recorder = recorder
    app.state.document_storage = DocumentStorage(
        settings.DOCUMENT_STORAGE_PATH, max_size=settings.MAX_DOCUMENT_SIZE_BYTES
    )

    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_middleware(AuditMiddleware, recorder=recorder, api_prefix=settings.API_PREFIX)

    app.include_router(auth_router, prefix=settings.API_PREFIX)
    app.include_router(practitioners_router, prefix=settings.API_PREFIX)
    app.include_router(audit_router, prefix=settings.API_PREFIX)
    for resource_router in resource_routers:
        app.include_router(resource_router, prefix=settings.API_PREFIX)

    @app.get("/")
    def read_root():
        return {"message": f"Welcome to {settings.PROJECT_NAME}"}

    return app


app = create_app()
