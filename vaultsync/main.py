import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from vaultsync import __version__
from vaultsync.auth import Authenticator, Identity, TokenAuthenticator, resolve_secret
from vaultsync.config import Settings
from vaultsync.coordinator import PullHandler, SyncCoordinator
from vaultsync.errors import AuthenticationError, LockTimeout, ServerError, VaultSyncError
from vaultsync.logging_config import setup_logging
from vaultsync.policy import get_policy
from vaultsync.schemas import SyncRequest, decode_blob
from vaultsync.store import VaultStore

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Dependencies ───────────────────────────────────────────────────────────────

def get_coordinator(request: Request) -> SyncCoordinator:
    return request.app.state.coordinator


def get_pull_handler(request: Request) -> PullHandler:
    return request.app.state.pull_handler


def get_identity(request: Request, authorization: Optional[str] = Header(default=None)) -> Identity:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Missing bearer token")
    authenticator: Authenticator = request.app.state.authenticator
    return authenticator.authenticate(authorization[7:].strip())


# ── Vault ──────────────────────────────────────────────────────────────────────

@router.post("/api/vault/sync")
def sync_vault(
    body: SyncRequest,
    identity: Identity = Depends(get_identity),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    outcome = coordinator.push(
        identity.user_id,
        identity.device_id,
        decode_blob(body.encrypted_blob),
        body.clock(coordinator.policy.clock_field),
    )
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_response())


@router.get("/api/vault/pull")
def pull_vault(
    identity: Identity = Depends(get_identity),
    handler: PullHandler = Depends(get_pull_handler),
):
    return handler.to_response(handler.pull(identity.user_id))


# ── Ping ───────────────────────────────────────────────────────────────────────

@router.get("/", response_class=PlainTextResponse)
def root():
    return "VaultSync backend running"


@router.get("/ping")
def ping():
    return {"status": "running"}


# ── Errors ─────────────────────────────────────────────────────────────────────

async def handle_vaultsync_error(request: Request, exc: VaultSyncError) -> JSONResponse:
    headers = {"Retry-After": "1"} if isinstance(exc, LockTimeout) else None
    if isinstance(exc, ServerError) and not isinstance(exc, LockTimeout):
        message = "Server error"
    else:
        message = str(exc)
    return JSONResponse(status_code=exc.status_code, content={"message": message}, headers=headers)


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{where}: {first.get('msg')}" if where else str(first.get("msg"))
    else:
        message = "Invalid request body"
    return JSONResponse(status_code=400, content={"message": message})


# ── App factory ────────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[VaultStore] = None,
    authenticator: Optional[Authenticator] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    policy = get_policy(settings.sync_policy)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        vault_store = store or VaultStore.from_url(
            settings.database_url, lock_timeout=settings.lock_timeout_seconds
        )
        vault_store.open()
        app.state.store = vault_store
        app.state.coordinator = SyncCoordinator(
            vault_store, policy, max_blob_bytes=settings.max_blob_bytes
        )
        app.state.pull_handler = PullHandler(vault_store, policy)
        app.state.authenticator = authenticator or TokenAuthenticator(
            resolve_secret(settings.secret_key, settings.secret_key_file),
            ttl_days=settings.token_ttl_days,
        )
        logger.info("VaultSync %s started with %s policy", __version__, policy.name)
        try:
            yield
        finally:
            vault_store.close()

    app = FastAPI(
        title="VaultSync API",
        description="Multi-device synchronization of a client-encrypted vault blob.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(VaultSyncError, handle_vaultsync_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.include_router(router)
    app.state.settings = settings
    return app


def run(settings: Optional[Settings] = None) -> None:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level, structured=settings.log_json)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    run()
