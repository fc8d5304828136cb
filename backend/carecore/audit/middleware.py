import logging

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from .rules import ResourceRule, build_rules, resolve
from .service import AuditRecorder

logger = logging.getLogger(__name__)


class AuditMiddleware(BaseHTTPMiddleware):
    """
    Records every GET on a FHIR resource path once the response status is
    known. Writes are recorded by the handlers themselves, so other methods
    pass through untouched.
    """

    def __init__(self, app, recorder: AuditRecorder, api_prefix: str = "/api", rules: list[ResourceRule] | None = None):
        super().__init__(app)
        self.recorder = recorder
        self.rules = rules if rules is not None else build_rules(api_prefix)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        match = resolve(self.rules, request.method, request.url.path)
        if match is None:
            return await call_next(request)

        try:
            response = await call_next(request)
        except Exception as exc:
            self._record(request, match, status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc) or type(exc).__name__)
            raise

        error_message = None
        if response.status_code >= 400:
            error_message = f"Request failed with status {response.status_code}"
        self._record(request, match, response.status_code, error_message)
        return response

    def _record(self, request: Request, match, status_code: int, error_message: str | None) -> None:
        principal = getattr(request.state, "principal", None)
        self.recorder.log_access(
            action=match.action,
            resource_type=match.resource_type,
            resource_id=match.resource_id,
            principal=principal,
            request=request,
            status_code=status_code,
            error_message=error_message,
        )
