"""
SoulBridge FastAPI Main Application
Entry point for the cross-chain identity orchestration service.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from soulbridge import __version__
from soulbridge.config import config
from soulbridge.errors import (
    BackendUnavailableError,
    ChainIdentityNotFoundError,
    CredentialNotFoundError,
    DuplicateRequestError,
    IdentityNotFoundError,
    RequestNotFoundError,
    SoulBridgeError,
    TransactionTimeoutError,
    UserRejectedError,
)
from soulbridge.routes import admin, bridge, credentials, identity, verification
from soulbridge.services import get_facade, shutdown_facade

logging.basicConfig(
    level=config.API_LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="SoulBridge Identity Orchestrator",
    description="Cross-chain identity verification and bridging with Soulbound tokens",
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(identity.router, prefix="/api", tags=["Identity"])
app.include_router(verification.router, prefix="/api", tags=["Verification"])
app.include_router(bridge.router, prefix="/api", tags=["Bridge"])
app.include_router(credentials.router, prefix="/api", tags=["Credentials"])
app.include_router(admin.router, prefix="/api", tags=["Admin"])


# Most specific first
ERROR_STATUS = [
    ((IdentityNotFoundError, ChainIdentityNotFoundError, CredentialNotFoundError,
      RequestNotFoundError), 404),
    ((DuplicateRequestError,), 409),
    ((UserRejectedError,), 403),
    ((BackendUnavailableError,), 502),
    ((TransactionTimeoutError,), 504),
]


def status_for(error: SoulBridgeError) -> int:
    for error_types, status_code in ERROR_STATUS:
        if isinstance(error, error_types):
            return status_code
    return 400


@app.exception_handler(SoulBridgeError)
async def soulbridge_error_handler(request: Request, exc: SoulBridgeError):
    """Every orchestration error becomes ``{"success": false, "message": reason}``."""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning(f"[!] {request.method} {request.url.path}: {exc.reason}")
    body = {
        "success": False,
        "message": exc.reason,
        "error": type(exc).__name__,
        "retryable": exc.retryable,
    }
    if isinstance(exc, DuplicateRequestError):
        body["existingId"] = exc.existing_id
    if getattr(exc, "tx_hash", None):
        body["transactionHash"] = exc.tx_hash
    return JSONResponse(status_code=status_code, content=body)


@app.on_event("startup")
async def startup_event():
    """Build services and resume any unfinished requests."""
    facade = get_facade()
    identity = await facade.resume()
    if identity is not None:
        logger.info(f"[+] Session restored for {identity.did}")


@app.on_event("shutdown")
async def shutdown_event():
    await shutdown_facade()


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "SoulBridge Identity Orchestrator",
        "version": __version__,
        "primary_chain": config.PRIMARY_CHAIN,
        "contracts_configured": config.is_contracts_configured(),
        "evm_wallet_configured": config.is_evm_wallet_configured(),
        "backend_configured": config.is_backend_configured(),
    }


if __name__ == "__main__":
    uvicorn.run(
        "soulbridge.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        log_level=config.API_LOG_LEVEL,
        reload=True
    )
