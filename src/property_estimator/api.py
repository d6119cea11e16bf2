"""
FastAPI Service for Belgian Property Price Estimation

REST API over EstimatorService:
- GET  /health: Service health check
- GET  /api/v1/models: Training status per algorithm
- POST /api/v1/models/{algorithm}/train: Start background training (202)
- DELETE /api/v1/models/{algorithm}/train: Cancel a running training job
- POST /api/v1/predict-price?algorithm=...: Single-algorithm estimate
- POST /api/v1/compare: Estimates from every algorithm plus a summary
- GET  /api/v1/market-statistics: Statistics of the loaded dataset

Request bodies accept snake_case or camelCase keys.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import load_config
from .exceptions import ModelNotTrainedError
from .features import PropertyQuery
from .service import Algorithm, EstimatorService, PredictionResult

logger = logging.getLogger(__name__)

# ==================== API MODELS (Request/Response Schemas) ====================

class PropertyRequest(BaseModel):
    """
    Property description for a price estimate.

    Unknown location, type or condition strings are accepted and priced with
    neutral factors.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "surface": 120,
                "rooms": 3,
                "bathrooms": 1,
                "constructionYear": 1995,
                "location": "Brussels",
                "propertyType": "house",
                "condition": "good",
                "hasGarden": True,
                "hasParking": False,
            }
        },
    )

    surface: float = Field(..., gt=0, description="Living area in m² (must be positive)")
    rooms: int = Field(..., ge=0, description="Number of rooms")
    bathrooms: int = Field(..., ge=0, description="Number of bathrooms")
    construction_year: int = Field(..., ge=1800, le=2100, description="Year of construction")
    location: str = Field(..., description="City (e.g. 'Brussels', 'Ghent')")
    property_type: str = Field(..., description="studio, apartment, house, townhouse or villa")
    condition: str = Field("good", description="needs_renovation, fair, good or excellent")
    has_garden: bool = Field(False, description="Property has a garden")
    has_parking: bool = Field(False, description="Property has parking")

    @field_validator('surface')
    @classmethod
    def validate_surface(cls, v):
        if v > 10000:
            raise ValueError('surface seems unrealistically large (>10,000 m²)')
        return v

    def to_query(self) -> PropertyQuery:
        return PropertyQuery(**self.model_dump())


class PredictionResponse(BaseModel):
    price: float = Field(..., description="Estimated price in euros")
    confidence: float = Field(..., description="Confidence score in [0.7, 1.0]")
    algorithm: str = Field(..., description="Algorithm that produced the estimate")
    processing_time_ms: float

    @classmethod
    def from_result(cls, result: PredictionResult) -> "PredictionResponse":
        return cls(**result.to_dict())


class ComparisonResponse(BaseModel):
    results: List[PredictionResponse]
    average_price: float
    average_processing_time_ms: float
    deviations_pct: Dict[str, float] = Field(
        ..., description="Per-algorithm deviation from the average price, in percent"
    )


class TrainingResponse(BaseModel):
    algorithm: str
    status: Optional[str] = None
    cancelled: Optional[bool] = None


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    trained_models: List[str]
    dataset_loaded: bool
    dataset_size: Optional[int] = None
    uptime_seconds: Optional[float] = None


# ==================== DEPENDENCIES ====================

def get_service(request: Request) -> EstimatorService:
    service = request.app.state.service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Estimator service not initialised. Please check server logs."
        )
    return service


def parse_algorithm(algorithm: str) -> Algorithm:
    try:
        return Algorithm.parse(algorithm)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# ==================== ROUTES ====================

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request, service: EstimatorService = Depends(get_service)):
    """
    Service health check endpoint.

    Never triggers a dataset fetch; dataset_size is reported once loaded.
    """
    provider = service.provider
    trained = [name for name, entry in service.status().items() if entry["trained"]]
    return HealthResponse(
        status="healthy",
        trained_models=trained,
        dataset_loaded=provider.is_loaded,
        dataset_size=len(provider.load()) if provider.is_loaded else None,
        uptime_seconds=time.monotonic() - request.app.state.started_at,
    )


@router.get("/api/v1/models", tags=["Models"])
async def list_models(service: EstimatorService = Depends(get_service)) -> Dict[str, Any]:
    return service.status()


@router.post("/api/v1/models/{algorithm}/train", response_model=TrainingResponse,
             status_code=status.HTTP_202_ACCEPTED, tags=["Models"])
async def start_training(algorithm: str, service: EstimatorService = Depends(get_service)):
    """Start (or join) background training for one algorithm."""
    selected = parse_algorithm(algorithm)
    job = service.train_in_background(selected)
    logger.info("Training requested for %s", selected.label)
    return TrainingResponse(algorithm=selected.value, status=job.status)


@router.delete("/api/v1/models/{algorithm}/train", response_model=TrainingResponse, tags=["Models"])
async def cancel_training(algorithm: str, service: EstimatorService = Depends(get_service)):
    selected = parse_algorithm(algorithm)
    cancelled = service.cancel(selected)
    job = service.job(selected)
    return TrainingResponse(
        algorithm=selected.value,
        status=job.status if job is not None else None,
        cancelled=cancelled,
    )


@router.post("/api/v1/predict-price", response_model=PredictionResponse, tags=["Prediction"])
def predict_price(
    request: PropertyRequest,
    algorithm: str = Query(Algorithm.LINEAR_REGRESSION.value, description="Algorithm to use"),
    service: EstimatorService = Depends(get_service),
):
    """
    Estimate a property price with one algorithm.

    Raises:
        404: Unknown algorithm
        409: Algorithm not trained yet
        422: Invalid input
    """
    selected = parse_algorithm(algorithm)
    try:
        result = service.predict(selected, request.to_query())
    except ModelNotTrainedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid input: {str(e)}"
        )
    return PredictionResponse.from_result(result)


@router.post("/api/v1/compare", response_model=ComparisonResponse, tags=["Prediction"])
def compare_algorithms(request: PropertyRequest, service: EstimatorService = Depends(get_service)):
    """
    Estimate with every algorithm; untrained ones are trained first.

    The first call can take a while since it trains all five estimators.
    """
    summary = service.compare_all(request.to_query())
    return ComparisonResponse(
        results=[PredictionResponse.from_result(result) for result in summary.results],
        average_price=summary.average_price,
        average_processing_time_ms=summary.average_processing_time_ms,
        deviations_pct=summary.deviations_pct,
    )


@router.get("/api/v1/market-statistics", tags=["Dataset"])
def market_statistics(service: EstimatorService = Depends(get_service)) -> Dict[str, Any]:
    return service.market_statistics().to_dict()


# ==================== ERROR HANDLERS ====================

async def http_exception_handler(request, exc):
    """Custom HTTP exception handler"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code
        }
    )


async def general_exception_handler(request, exc):
    """Catch-all exception handler"""
    logger.exception("Unexpected error while handling %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc)
        }
    )


# ==================== FASTAPI APPLICATION ====================

def create_app(service: Optional[EstimatorService] = None) -> FastAPI:
    """
    Build the application.

    Args:
        service: Pre-built service (tests). When omitted, one is created at
            startup from load_config() and shut down with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_service = app.state.service is None
        if owns_service:
            config = load_config()
            app.state.service = EstimatorService.from_config(config)
            logger.info("Estimator service ready (dataset url: %s)", config["dataset"]["url"])
        app.state.started_at = time.monotonic()
        yield
        if owns_service:
            app.state.service.shutdown()

    app = FastAPI(
        title="Belgian Property Price Estimator API",
        description="Price estimates from five regression algorithms trained on Belgian listings",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.started_at = time.monotonic()
    app.include_router(router)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    return app


app = create_app()


# ==================== MAIN (for local testing) ====================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    logger.info("Starting Property Price Estimator API on http://localhost:8000 (docs at /docs)")

    uvicorn.run(
        "property_estimator.api:app",
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
