"""
Attribution Engine - FastAPI Application

Main entry point for the Attribution Engine backend.

Architecture:
- Connector events → EventIngest → AttributionLedger (first touch wins)
- Ledger snapshot → FraudSignalDetector → FraudSignal (append-only)
- FraudSignal → RiskScoringEngine → ActorRisk (+ enforcement)
- ActorRisk + Ledger → PayoutCalculator → ComplianceGate → Wallet ledger
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .database import init_db
from .routers import attribution_router, fraud_router, payouts_router, scheduler_router
from .services.errors import ComplianceBlock, ConflictError, TransientError, ValidationError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Attribution Engine",
    description="""
    Attribution Engine - Referral Attribution, Fraud Detection and Payouts

    Binds each end-user to the actor who first referred them, watches the
    ledger for fraud patterns, and pays actors only for verified activity.

    ## Pipeline
    1. **Attribution Ledger**: first qualifying touch wins, permanently
    2. **Fraud Signals**: real-time detector battery + nightly ring detection
    3. **Risk Scoring**: signals → score → account status (+ enforcement)
    4. **Compliance Gate**: payout request → hold / approve → settlement

    ## Key Principles
    - An attribution is never re-assigned to a different actor
    - Signals are immutable; reviews are appended
    - At most one non-terminal payout request per actor
    - Payout calculations are deterministic and read-only
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ERROR MAPPING
# =============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={"error": "validation_error", "detail": exc.message, "field": exc.field},
    )


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError):
    return JSONResponse(
        status_code=409,
        content={
            "error": "conflict",
            "detail": exc.message,
            "existingId": getattr(exc.existing, "id", None),
        },
    )


@app.exception_handler(ComplianceBlock)
async def compliance_block_handler(request: Request, exc: ComplianceBlock):
    return JSONResponse(
        status_code=403,
        content={"error": "compliance_block", "reason": exc.reason, "details": exc.details},
    )


@app.exception_handler(TransientError)
async def transient_error_handler(request: Request, exc: TransientError):
    logger.warning(f"Transient failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "unavailable", "detail": "Temporarily unavailable, retry later"},
    )


# Include routers
app.include_router(attribution_router)
app.include_router(fraud_router)
app.include_router(payouts_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Attribution Engine",
        "version": "1.0.0",
        "description": "Referral attribution, fraud detection and payouts",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
