from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import engine, init_db
from app.features.permissions.defaults import seed_default_policies
from app.features.permissions.enforcer import Enforcer
from app.features.permissions.routes import router as permission_router
from app.features.permissions.sql_store import SQLRuleStore
from app.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Authorization Service",
    description="Domain-scoped RBAC for system, group and project resources",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)


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


@app.on_event("startup")
async def startup():
    """Create tables, load the rules and build the enforcer."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")

    store = SQLRuleStore(engine)
    await store.reload()
    enforcer = Enforcer(policies=store, roles=store)

    if config.RBAC_SEED_DEFAULTS:
        await seed_default_policies(enforcer, config.RBAC_BOOTSTRAP_ADMIN_ID)

    app.state.enforcer = enforcer
    log.info(f"Authorization enforcer ready ({store.rules().size} rules)")


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Authorization Service API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": ["/permissions/*"],
            "public_endpoints": ["/", "/health"]
        },
        "domains": ["system", "group:<id>", "project:<id>"],
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "authorization": "ready" if getattr(app.state, "enforcer", None) is not None else "starting",
    }


# Permission routes (RBAC)
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
