import uuid
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from feedbackshield.api.admin import router as admin_router
from feedbackshield.api.dependencies import get_engine
from feedbackshield.api.security import verify_api_token
from feedbackshield.config import settings
from feedbackshield.errors import (
    PersistenceError,
    RecordNotFound,
    UpstreamUnavailable,
    ValidationError,
)
from feedbackshield.pipelines.fraud_pipeline import FraudEngine
from feedbackshield.schemas.fraud_schemas import (
    BulkScoresRequest,
    BulkScoresResponse,
    FraudScoreOut,
    FraudScoreRequest,
    FraudScoreResponse,
)
from feedbackshield.utils.logging_config import StructuredLogger, init_logging, request_id_var

# Initialize structured logging
init_logging()

logger = StructuredLogger(__name__)

app = FastAPI(
    title="FeedbackShield API",
    version="0.1.0",
    description="Fraud risk scoring for phone-linked customer feedback",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["*"],
)


# Security headers middleware
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# Request id middleware: every log line of a request carries the same id
@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


# ============== ERROR MAPPING ==============


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "field": exc.field},
    )


@app.exception_handler(RecordNotFound)
async def not_found_handler(request: Request, exc: RecordNotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error("Persistence failure", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage unavailable, score was not recorded."},
    )


@app.exception_handler(UpstreamUnavailable)
async def upstream_error_handler(request: Request, exc: UpstreamUnavailable):
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": f"Upstream provider '{exc.provider}' unavailable."},
    )


# Include admin router
app.include_router(admin_router)


@app.get("/health")
def health():
    """Health check endpoint - no auth required."""
    return {"status": "ok"}


# ============== SCORING ==============


@app.post(
    "/fraud/score",
    response_model=FraudScoreResponse,
    dependencies=[Depends(verify_api_token)],
)
def compute_score(request: FraudScoreRequest, engine: FraudEngine = Depends(get_engine)):
    response = engine.compute_score(request)
    logger.info(
        "Score served",
        composite=response.fraud_score.composite_score,
        risk_level=response.fraud_score.risk_level,
        degraded=response.degraded_components,
    )
    return response


@app.get(
    "/fraud/score/{identity_hash}",
    response_model=FraudScoreOut,
    dependencies=[Depends(verify_api_token)],
)
def get_active_score(identity_hash: str, engine: FraudEngine = Depends(get_engine)):
    score = engine.get_active_score(identity_hash)
    if score is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active fraud score for this identity",
        )
    return score


@app.post(
    "/fraud/scores/bulk",
    response_model=BulkScoresResponse,
    dependencies=[Depends(verify_api_token)],
)
def get_bulk_scores(request: BulkScoresRequest, engine: FraudEngine = Depends(get_engine)):
    scores = engine.get_bulk_scores(request.identity_hashes)
    missing = [h for h in dict.fromkeys(request.identity_hashes) if h not in scores]
    return BulkScoresResponse(scores=scores, missing=missing)


@app.get("/fraud/statistics", dependencies=[Depends(verify_api_token)])
def get_statistics(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    engine: FraudEngine = Depends(get_engine),
):
    if start and end and start > end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start must not be after end")
    return engine.get_statistics(start, end)
