# Copyright 2025 The Kubernetes Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import os
import logging
from datetime import datetime
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, status
from pydantic import BaseModel, Field

from ..common.bundle_constants import CURRENCY, SERVED_ALGORITHMS
from ..common.errors import (
    BundleLoadError,
    BundleNotFoundError,
    LoadTimeoutError,
    ShapeMismatchError,
)
from ..common.metrics import AlgorithmMetrics
from ..common.naming import normalize_name, title_case
from ..training.model_bundle import BundleRegistry
from .active_model import ActiveModelSet, LoadedModels
from .hot_loader import ModelHotLoader, StaticBundleResolver


class PredictSettings:
    """Configuration for the prediction server."""

    # Directory holding one `<bundle_id>.json` per make/model
    PROCESSED_DIR: str = os.getenv("CARPRICE_PROCESSED_DIR", os.path.join("datasets", "processed"))

    # Seconds a request may wait for its bundle to load
    LOAD_TIMEOUT_SEC: float = float(os.getenv("CARPRICE_LOAD_TIMEOUT_SEC", "30"))

    # Optional bundle to activate at startup
    PRELOAD_MAKE: str = os.getenv("CARPRICE_PRELOAD_MAKE", "")
    PRELOAD_MODEL: str = os.getenv("CARPRICE_PRELOAD_MODEL", "")

    # Upper bound on the number of target years in one range request
    MAX_RANGE_YEARS: int = int(os.getenv("CARPRICE_MAX_RANGE_YEARS", "100"))

    # Server
    HOST: str = os.getenv("PREDICT_HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PREDICT_PORT", "8001"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = PredictSettings()
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
)


# Serving state; rebound together by configure()
bundle_registry = BundleRegistry(settings.PROCESSED_DIR)
active_models = ActiveModelSet()
hot_loader = ModelHotLoader(active_models, StaticBundleResolver(settings.PROCESSED_DIR),
                            default_timeout=settings.LOAD_TIMEOUT_SEC)


def configure(processed_dir: Optional[str] = None, load_timeout: Optional[float] = None):
    """Point the server at a bundle directory and start from an empty active set."""
    global bundle_registry, active_models, hot_loader
    processed_dir = processed_dir or settings.PROCESSED_DIR
    load_timeout = settings.LOAD_TIMEOUT_SEC if load_timeout is None else load_timeout
    bundle_registry = BundleRegistry(processed_dir)
    active_models = ActiveModelSet()
    hot_loader = ModelHotLoader(active_models, StaticBundleResolver(processed_dir), default_timeout=load_timeout)
    logging.info(f"Serving bundles from {processed_dir} (load timeout {load_timeout}s)")


# FastAPI app
app = FastAPI(
    title="Used Car Price Predictor",
    description="Predicts used-car prices per make/model from hot-loaded model bundles.",
    version="1.0.0"
)


# Pydantic models
class PredictRequest(BaseModel):
    make: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    year_of_production: int = Field(..., ge=1900, le=2100)
    target_year: int = Field(..., ge=1900, le=2100)
    transmission: str
    fuel_type: str
    mileage_km: float = Field(..., ge=0)


class PredictRangeRequest(BaseModel):
    make: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    year_of_production: int = Field(..., ge=1900, le=2100)
    from_year: int = Field(..., ge=1900, le=2100)
    to_year: int = Field(..., ge=1900, le=2100)
    transmission: str
    fuel_type: str
    mileage_km: float = Field(..., ge=0)


class ModelMetrics(BaseModel):
    mse: float
    mae: float
    r2: float


class ModelPrediction(BaseModel):
    algorithm: str = Field(..., description="One of linear, ridge, ridge_rf, ridge_gb")
    predicted_price: float
    metrics: ModelMetrics


class ModelInfo(BaseModel):
    version: str = "unloaded"
    trained_at: Optional[str] = None


class PredictResponse(BaseModel):
    make: str
    model: str
    year_of_production: int
    target_year: int
    currency: str = CURRENCY
    results: List[ModelPrediction]
    model_info: ModelInfo


class PredictRangeResponse(BaseModel):
    currency: str = CURRENCY
    items: List[PredictResponse]
    model_info: ModelInfo


class CatalogItem(BaseModel):
    model_id: str
    make: str
    display_model: str
    file_name: str
    version: str
    trained_at: Optional[str]
    algorithms: List[str]


class CatalogResponse(BaseModel):
    items: List[CatalogItem] = Field(default_factory=list)


class LabeledValue(BaseModel):
    value: str
    label: str


class ManufacturerRequest(BaseModel):
    manufacturer: Optional[str] = None


class ModelDetailsRequest(BaseModel):
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    allowed_fuels: Optional[List[str]] = None
    allowed_transmissions: Optional[List[str]] = None


class ModelDetailsResponse(BaseModel):
    fuels: List[LabeledValue]
    transmissions: List[LabeledValue]
    min_year: Optional[int]
    max_year: Optional[int]
    anchor_target_year: Optional[int]


class ActiveModelResponse(BaseModel):
    bundle_key: str
    make: str
    model: str
    version: str
    trained_at: str
    loaded_at: datetime
    algorithms: List[str]


# Helpers

def _ensure_loaded(make: str, model: str) -> LoadedModels:
    """Hot-load the bundle for a request and map loader failures to HTTP errors."""
    try:
        return hot_loader.ensure_loaded(make, model)
    except BundleNotFoundError as e:
        logging.warning(f"No bundle for {make}/{model}: {e}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No model available for {make} {model}")
    except LoadTimeoutError as e:
        logging.warning(f"Bundle load timed out for {make}/{model}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Model is still loading, retry later")
    except (BundleLoadError, ShapeMismatchError) as e:
        logging.error(f"Bundle for {make}/{model} is unusable: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Model bundle could not be loaded")


def _metrics_dto(metrics: Dict[str, AlgorithmMetrics], algorithm: str) -> ModelMetrics:
    m = metrics.get(algorithm)
    if m is None:
        return ModelMetrics(mse=0.0, mae=0.0, r2=0.0)
    return ModelMetrics(mse=m.mse, mae=m.mae, r2=m.r2)


def _predict_one(snapshot: LoadedModels, make: str, model: str, year_of_production: int,
                 target_year: int, fuel: str, transmission: str, mileage_km: float) -> PredictResponse:
    row = snapshot.encode_row(year_of_production, mileage_km, fuel, transmission, target_year)
    scaled = snapshot.predict_all_scaled(row)

    results = [
        ModelPrediction(
            algorithm=algorithm,
            predicted_price=round(snapshot.to_price(scaled[algorithm]), 2),
            metrics=_metrics_dto(snapshot.metrics, algorithm),
        )
        for algorithm in SERVED_ALGORITHMS if algorithm in scaled
    ]
    return PredictResponse(
        make=make,
        model=model,
        year_of_production=year_of_production,
        target_year=target_year,
        results=results,
        model_info=_model_info(snapshot),
    )


def _model_info(snapshot: LoadedModels) -> ModelInfo:
    return ModelInfo(version=snapshot.version, trained_at=snapshot.trained_at)


def _filter_values(values: List[str], allow_only: Optional[List[str]]) -> List[str]:
    kept = [v for v in values if v.lower() != "other"]
    if allow_only:
        allow = {a.lower() for a in allow_only}
        kept = [v for v in kept if v.lower() in allow]
    return kept


def _same_make(bundle_make: str, requested: str) -> bool:
    return (bundle_make or "").strip().lower() == requested.strip().lower()


# API endpoints

@app.post("/api/v1/prediction/predict", response_model=PredictResponse)
def predict_endpoint(request: PredictRequest):
    """Predict the price of one vehicle with every served algorithm."""
    try:
        snapshot = _ensure_loaded(request.make, request.model)
        return _predict_one(snapshot, request.make, request.model, request.year_of_production,
                            request.target_year, request.fuel_type, request.transmission, request.mileage_km)
    except HTTPException:
        raise
    except Exception as e:
        logging.error(f"Prediction failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="An internal error occurred during prediction")


@app.post("/api/v1/prediction/predict/range", response_model=PredictRangeResponse)
def predict_range_endpoint(request: PredictRangeRequest):
    """Predict the price of one vehicle for every target year in [from_year, to_year]."""
    if request.from_year > request.to_year:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="from_year must be <= to_year")
    if request.to_year - request.from_year + 1 > settings.MAX_RANGE_YEARS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Range may span at most {settings.MAX_RANGE_YEARS} years")
    try:
        snapshot = _ensure_loaded(request.make, request.model)
        items = [
            _predict_one(snapshot, request.make, request.model, request.year_of_production,
                         year, request.fuel_type, request.transmission, request.mileage_km)
            for year in range(request.from_year, request.to_year + 1)
        ]
        return PredictRangeResponse(items=items, model_info=_model_info(snapshot))
    except HTTPException:
        raise
    except Exception as e:
        logging.error(f"Range prediction failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="An internal error occurred during prediction")


@app.get("/api/v1/catalog", response_model=CatalogResponse)
def catalog_endpoint():
    """List every readable bundle."""
    items = []
    for path, bundle in bundle_registry.iter_summaries():
        items.append(CatalogItem(
            model_id=path.stem,
            make=bundle.car.make,
            display_model=bundle.car.model or path.stem,
            file_name=path.name,
            version=bundle.version,
            trained_at=bundle.trained_at,
            algorithms=list(bundle.algorithms),
        ))
    items.sort(key=lambda item: item.display_model.lower())
    return CatalogResponse(items=items)


@app.get("/api/v1/manufacturers", response_model=List[LabeledValue])
def manufacturers_endpoint():
    """Distinct manufacturers that have at least one bundle."""
    makes = {}
    for _, bundle in bundle_registry.iter_summaries():
        make = (bundle.car.make or "").strip()
        if make:
            makes.setdefault(make.lower(), make)
    return [
        LabeledValue(value=value, label=value[0].upper() + value[1:])
        for value in sorted(makes)
    ]


@app.post("/api/v1/models/list", response_model=List[LabeledValue])
def models_list_endpoint(request: ManufacturerRequest):
    """Models available for one manufacturer, sorted by label."""
    if not request.manufacturer or not request.manufacturer.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Manufacturer is required.")

    seen = set()
    result = []
    for path, bundle in bundle_registry.iter_summaries():
        if not _same_make(bundle.car.make, request.manufacturer):
            continue
        value = normalize_name(path.stem)
        if value in seen:
            continue
        seen.add(value)
        result.append(LabeledValue(value=value, label=title_case((bundle.car.model or path.stem).strip().lower())))

    result.sort(key=lambda item: item.label.lower())
    return result


@app.post("/api/v1/models/details", response_model=ModelDetailsResponse)
def model_details_endpoint(request: ModelDetailsRequest):
    """Fuel/transmission choices and year bounds for one make/model."""
    if not request.manufacturer or not request.manufacturer.strip() or not request.model or not request.model.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Manufacturer and model are required.")

    wanted = normalize_name(request.model)
    for path, bundle in bundle_registry.iter_summaries():
        if not _same_make(bundle.car.make, request.manufacturer):
            continue
        if wanted not in (normalize_name(path.stem), normalize_name(bundle.car.model or path.stem)):
            continue

        fuels = _filter_values(list(bundle.preprocess.fuels), request.allowed_fuels)
        transmissions = _filter_values(list(bundle.preprocess.transmissions), request.allowed_transmissions)
        return ModelDetailsResponse(
            fuels=[LabeledValue(value=f.lower(), label=title_case(f.lower())) for f in fuels],
            transmissions=[LabeledValue(value=t.lower(), label=title_case(t.lower())) for t in transmissions],
            min_year=bundle.car.min_year,
            max_year=bundle.car.max_year,
            anchor_target_year=bundle.preprocess.anchor_target_year,
        )

    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Model not found for given manufacturer.")


@app.get("/api/v1/prediction/active", response_model=ActiveModelResponse)
def active_model_endpoint():
    """The bundle currently held by the active model set."""
    snapshot = active_models.current
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="No models loaded.")
    return ActiveModelResponse(
        bundle_key=snapshot.bundle_key,
        make=snapshot.car.make,
        model=snapshot.car.model,
        version=snapshot.version,
        trained_at=snapshot.trained_at,
        loaded_at=snapshot.loaded_at,
        algorithms=[a for a in SERVED_ALGORITHMS if a in snapshot.learners or a in snapshot.composed],
    )


@app.get("/healthz", status_code=status.HTTP_200_OK)
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "car-price-predictor"}


@app.get("/readyz", status_code=status.HTTP_200_OK)
def readiness_check():
    """Ready once at least one bundle can be served."""
    bundles = bundle_registry.list_bundle_files()
    if not bundles:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No model bundles available"
        )
    snapshot = active_models.current
    return {
        "status": "ready",
        "bundles": len(bundles),
        "active": snapshot.bundle_key if snapshot else None,
    }


@app.on_event("startup")
def startup():
    logging.info("Starting up...")
    if settings.PRELOAD_MAKE and settings.PRELOAD_MODEL:
        try:
            hot_loader.ensure_loaded(settings.PRELOAD_MAKE, settings.PRELOAD_MODEL)
        except (BundleLoadError, ShapeMismatchError) as e:
            logging.warning(f"Preload of {settings.PRELOAD_MAKE}/{settings.PRELOAD_MODEL} failed: {e}")


def main():
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    main()
