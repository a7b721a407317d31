"""
Readmission Risk Service - FastAPI Application

This module provides the REST API for the readmission risk service: patient
records, readmission risk predictions, and care recommendations.

================================================================================
API DESIGN
================================================================================

Key Design Principles:
─────────────────────
1. TENANT ISOLATION: Every route resolves the caller's hospital first and
   every store call is scoped to it
2. EXPLAINABILITY: Every risk score lists the factors that produced it
3. GRACEFUL DEGRADATION: Recommendations always return 200, falling back to
   a fixed list when the generative model is unavailable
4. NO INTERNAL DETAIL IN ERRORS: Unexpected failures return a generic message

Error bodies share one shape: {"success": false, "message": "..."}

================================================================================
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from readmission_risk.config import settings
from readmission_risk.model import RiskScorer
from readmission_risk.recommendations import GeminiRecommender, get_recommendations
from readmission_risk.schemas import (
    DeleteResponse,
    HealthResponse,
    PatientCreate,
    PatientResponse,
    PatientUpdate,
    PredictionRequest,
    RecommendationMetadata,
    RecommendationRequest,
    RecommendationResponse,
    RiskAssessmentResponse,
)
from readmission_risk.store import (
    DuplicatePatientError,
    InvalidPatientIdError,
    PatientStore,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Messages for missing required patient fields
REQUIRED_FIELD_MESSAGES = {
    "patientId": "Please add a patient ID",
    "firstName": "Please add a first name",
    "lastName": "Please add a last name",
    "age": "Please add age",
    "gender": "Please add gender",
    "primaryDiagnosis": "Please add a primary diagnosis",
    "diagnosis": "Please add a primary diagnosis",
    "lengthOfStay": "Please add length of stay",
}


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """
    Application state management.

    Holds the scorer, the patient store and the recommendation generator.
    Each is created on first use so tests can inject their own.

    Store-backed routes are plain functions, so FastAPI runs them in its
    threadpool and the blocking database calls stay off the event loop.
    """

    def __init__(self):
        self.scorer: Optional[RiskScorer] = None
        self.store: Optional[PatientStore] = None
        self.recommender: Optional[GeminiRecommender] = None
        self.started_at: Optional[datetime] = None
        self.predictions_performed: int = 0
        self._counter_lock = threading.Lock()

    def record_prediction(self) -> None:
        with self._counter_lock:
            self.predictions_performed += 1

    def get_scorer(self) -> RiskScorer:
        if self.scorer is None:
            self.scorer = RiskScorer()
        return self.scorer

    def get_store(self) -> PatientStore:
        if self.store is None:
            self.store = PatientStore()
        return self.store

    def get_recommender(self) -> GeminiRecommender:
        if self.recommender is None:
            self.recommender = GeminiRecommender()
        return self.recommender


# Global application state
app_state = AppState()


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")
    app_state.started_at = datetime.now(timezone.utc)
    app_state.get_scorer()

    try:
        app_state.get_store().create_tables()
    except SQLAlchemyError as e:
        logger.warning(f"Could not initialize patient store at startup: {e}")

    if not app_state.get_recommender().is_configured:
        logger.warning("GEMINI_API_KEY not set; recommendations will use the fallback list")

    yield

    # Shutdown
    logger.info("Shutting down readmission risk service")
    if app_state.store is not None:
        app_state.store.close()


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="Readmission Risk Service",
    description="""
    Hospital patient records with rule-based readmission risk scoring.

    ## Overview
    Patient records are scoped to the calling hospital. Each record can carry
    a structured readmission risk produced by the rule-based scorer.

    ## Key Features
    - **Explainable Scoring**: Every point of the 0-100 score maps to a named rule
    - **Tenant Isolation**: Hospitals never see each other's patients
    - **Care Recommendations**: Gemini-phrased advice with a fixed fallback

    ## API Endpoints
    - `POST /api/predictions`: Score a patient, optionally saving the result
    - `GET/POST /api/patients`: List or create patient records
    - `GET/PUT/DELETE /api/patients/{id}`: Read, update or delete a record
    - `POST /api/recommendations`: Care recommendations for a risk tier
    - `GET /health`: Service health check
    - `GET /rules`: Scoring rule table

    ## Clinical Integration
    The score is a simplified estimate for decision SUPPORT only.
    """,
    version=settings.service_version,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

router = APIRouter(prefix="/api")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def require_hospital(x_hospital_id: Optional[str] = Header(None)) -> str:
    """Resolve the calling hospital from the X-Hospital-ID header."""
    if not x_hospital_id or not x_hospital_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized, hospital identity required",
        )
    return x_hospital_id.strip()


def _error_body(message: str) -> Dict[str, Any]:
    return {"success": False, "message": message}


def _server_error(message: str, exc: Exception) -> HTTPException:
    logger.error(f"{message}: {exc}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)


def _validation_message(error: Dict[str, Any]) -> str:
    loc = [part for part in error.get("loc", ()) if isinstance(part, str)]
    field = loc[-1] if loc else "body"
    error_type = error.get("type", "")

    if field == "body" and error_type == "missing":
        return "Request body is required"
    if error_type in ("missing", "string_too_short") and field in REQUIRED_FIELD_MESSAGES:
        return REQUIRED_FIELD_MESSAGES[field]
    if error_type == "enum":
        return f"`{error.get('input')}` is not a valid enum value for path `{field}`."
    return f"{field}: {error.get('msg', 'Invalid value')}"


def _patient_response(record: Dict[str, Any]) -> PatientResponse:
    return PatientResponse.model_validate(record)


# =============================================================================
# PREDICTION ENDPOINTS
# =============================================================================

@router.post(
    "/predictions",
    response_model=RiskAssessmentResponse,
    tags=["Predictions"],
    summary="Score readmission risk for a patient"
)
def create_prediction(
    request: PredictionRequest,
    hospital_id: str = Depends(require_hospital),
) -> Dict[str, Any]:
    """
    Score a patient's 30-day readmission risk.

    If `patientId` is supplied and matches one of the hospital's records, the
    score, factors and label are saved onto that record. A non-matching id is
    ignored.
    """
    request_id = str(uuid.uuid4())
    assessment = app_state.get_scorer().score(request.to_scorer_input())
    app_state.record_prediction()

    if request.patient_id:
        try:
            app_state.get_store().record_risk_assessment(
                hospital_id, request.patient_id, assessment
            )
        except SQLAlchemyError as e:
            raise _server_error("Server error while generating prediction", e)

    logger.info(
        f"Prediction {request_id}: {assessment.readmission_risk} ({assessment.risk_level.value})",
        extra={
            "hospital_id": hospital_id,
            "patient_id": request.patient_id,
            "factors": len(assessment.factors),
        }
    )
    return assessment.to_dict()


# =============================================================================
# PATIENT ENDPOINTS
# =============================================================================

@router.get("/patients", response_model=List[PatientResponse], tags=["Patients"])
def list_patients(hospital_id: str = Depends(require_hospital)) -> List[PatientResponse]:
    """All patient records of the calling hospital."""
    try:
        records = app_state.get_store().list_patients(hospital_id)
    except SQLAlchemyError as e:
        raise _server_error("Server error while fetching patients", e)
    return [_patient_response(r) for r in records]


@router.post(
    "/patients",
    response_model=PatientResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Patients"],
)
def create_patient(
    request: PatientCreate,
    hospital_id: str = Depends(require_hospital),
) -> PatientResponse:
    """Create a patient record owned by the calling hospital."""
    try:
        record = app_state.get_store().create_patient(
            hospital_id, request.model_dump(exclude_none=True)
        )
    except SQLAlchemyError as e:
        raise _server_error("Server error while creating patient", e)
    return _patient_response(record)


@router.get("/patients/{patient_id}", response_model=PatientResponse, tags=["Patients"])
def get_patient(
    patient_id: str,
    hospital_id: str = Depends(require_hospital),
) -> PatientResponse:
    try:
        record = app_state.get_store().get_patient(hospital_id, patient_id)
    except SQLAlchemyError as e:
        raise _server_error("Server error while fetching patient", e)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    return _patient_response(record)


@router.put("/patients/{patient_id}", response_model=PatientResponse, tags=["Patients"])
def update_patient(
    patient_id: str,
    request: PatientUpdate,
    hospital_id: str = Depends(require_hospital),
) -> PatientResponse:
    """Update only the fields present in the request body."""
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    try:
        record = app_state.get_store().update_patient(hospital_id, patient_id, changes)
    except SQLAlchemyError as e:
        raise _server_error("Server error while updating patient", e)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    return _patient_response(record)


@router.delete("/patients/{patient_id}", response_model=DeleteResponse, tags=["Patients"])
def delete_patient(
    patient_id: str,
    hospital_id: str = Depends(require_hospital),
) -> DeleteResponse:
    try:
        record = app_state.get_store().delete_patient(hospital_id, patient_id)
    except SQLAlchemyError as e:
        raise _server_error("Server error while deleting patient", e)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    return DeleteResponse(success=True, data=record["id"])


# =============================================================================
# RECOMMENDATION ENDPOINTS
# =============================================================================

@router.post(
    "/recommendations",
    response_model=RecommendationResponse,
    tags=["Recommendations"],
    summary="Care recommendations for a risk tier"
)
async def create_recommendations(
    request: Optional[RecommendationRequest] = Body(None),
    hospital_id: str = Depends(require_hospital),
) -> RecommendationResponse:
    """
    Generate 3-4 plain-language care recommendations.

    Always answers 200. `metadata.source` is `ai-generated` when Gemini
    produced the list and `fallback` when the fixed list was used. Context
    values that cannot be used are dropped instead of rejected.
    """
    request = request or RecommendationRequest()
    recommendations, source = await get_recommendations(
        app_state.get_recommender(),
        request.risk_category,
        request.risk_value,
        request.patient_data,
    )
    return RecommendationResponse(
        recommendations=recommendations,
        metadata=RecommendationMetadata(
            risk_category=request.risk_category,
            risk_value=request.risk_value,
            generated_at=datetime.now(timezone.utc),
            source=source,
        ),
    )


app.include_router(router)


# =============================================================================
# OPERATIONS ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Operations"])
def health_check() -> HealthResponse:
    """
    Health check endpoint for Kubernetes probes.

    Checks patient store connectivity, scorer and generator configuration.
    """
    checks = {}
    overall_status = "healthy"

    store_check = {"status": "ok"}
    if not app_state.get_store().ping():
        store_check["status"] = "error"
        overall_status = "unhealthy"
    checks["store"] = store_check

    scorer = app_state.get_scorer()
    checks["scorer"] = {
        "status": "ok",
        "version": scorer.VERSION,
        "rules": len(scorer.rules),
        "predictions_performed": app_state.predictions_performed,
    }

    checks["recommender"] = {
        "status": "ok" if app_state.get_recommender().is_configured else "fallback_only",
        "model": app_state.get_recommender().model,
    }

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@app.get("/rules", tags=["Information"], summary="List the readmission scoring rules")
async def list_rules() -> Dict[str, Any]:
    """Rule table and tier thresholds, for clinical governance review."""
    scorer = app_state.get_scorer()
    return {
        "rule_engine_version": scorer.VERSION,
        "rules": scorer.describe(),
        "max_score": scorer.max_score,
        "thresholds": {
            "moderate": scorer.moderate_threshold,
            "high": scorer.high_threshold,
        },
    }


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    """Field validation failures become 400 with joined messages."""
    messages: List[str] = []
    for error in exc.errors():
        message = _validation_message(error)
        if message not in messages:
            messages.append(message)
    logger.info(f"Validation failed for {request.url.path}: {messages}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(", ".join(messages)),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(InvalidPatientIdError)
async def invalid_id_handler(request, exc: InvalidPatientIdError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body("Invalid patient ID"),
    )


@app.exception_handler(DuplicatePatientError)
async def duplicate_patient_handler(request, exc: DuplicatePatientError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(str(exc)),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    content = _error_body("An unexpected error occurred")
    if settings.debug:
        content["detail"] = str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=content,
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main() -> None:
    import uvicorn

    uvicorn.run(
        "readmission_risk.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
