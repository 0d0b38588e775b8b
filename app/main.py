import logging
import uuid

from fastapi import Depends, FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.responses import Response

from app.api.billing import router as billing_router
from app.api.billing import webhook_router as payment_webhook_router
from app.api.content import router as content_router
from app.api.deps import get_current_user, limiter
from app.api.trash import router as trash_router
from app.errors import register_error_handlers
from app.logging import configure_logging

REQUEST_ID_HEADER = "X-Request-ID"

configure_logging()
app = FastAPI(title="cidvault API")
logger = logging.getLogger(__name__)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_error_handlers(app)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def _include_api_router(router, dependencies=None):
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(content_router, dependencies=[Depends(get_current_user)])
_include_api_router(trash_router, dependencies=[Depends(get_current_user)])
_include_api_router(billing_router, dependencies=[Depends(get_current_user)])
# Payment provider callbacks authenticate by signature, not bearer token.
_include_api_router(payment_webhook_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
