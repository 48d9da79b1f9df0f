from fastapi import Depends, FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import get_db, init_db
from app.core.exceptions import PermissionEngineError
from app.features.users.routes import router as user_router
from app.features.permissions.actions import ACTIONS, ACTION_HIERARCHY
from app.features.permissions.routes import router as permission_router
from app.features.users.dependencies import get_authorization_header
from app.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Permission Engine",
    description="Role, permission and override based authorization service",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(key_func=get_authorization_header)
app.state.limiter = limiter


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.app.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(PermissionEngineError)
async def permission_engine_exception_handler(request: Request, exc: PermissionEngineError):
    log.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.on_event("startup")
async def startup():
    """Create missing tables before the first request."""
    log.info(f"Preparing database at {config.SQLALCHEMY_DATABASE_URL.split('://')[0]}")
    await init_db()
    log.info("Database ready")


@app.get("/")
async def root():
    """Describe the authorization model this service enforces."""
    return {
        "service": "Permission Engine API",
        "version": "0.1.0",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "permission_key_format": "<module path>.<action>",
        "actions": {action: sorted(ACTION_HIERARCHY[action]) for action in ACTIONS},
        "authority": {
            "ordering": "lower priority holds more authority",
            "override_grant_max_priority": config.OVERRIDE_GRANT_MAX_PRIORITY,
            "catalog_admin_max_priority": config.CATALOG_ADMIN_MAX_PRIORITY,
            "manager_priority_threshold": config.MANAGER_PRIORITY_THRESHOLD,
        },
    }


@app.get("/health")
async def health(db: AsyncSession = Depends(get_db)):
    """Report whether the database answers."""
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        log.error(f"Health check failed: {exc}")
        return JSONResponse({"status": "unhealthy", "database": "unreachable"}, status_code=503)
    return {"status": "healthy", "database": "ok"}


app.include_router(user_router, prefix="/users", tags=["users"])
# Singular alias kept for clients that call /user/me
app.include_router(user_router, prefix="/user", tags=["users"], include_in_schema=False)
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
