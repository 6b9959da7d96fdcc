# ops_engine/scaling_manager.py
import os
import json
import math
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

import joblib
import numpy as np
import pandas as pd
from prophet import Prophet

from .settings import settings
from .schemas import ForecastPoint, ScalingForecast, ScalingSummary
from .holidays import is_holiday, holidays_frame
from .cache_utils import cache_result
from .custom_exceptions import InsufficientDataError, ModelLoadError
from .timeseries_reader import fetch_hourly_metrics, require_min_rows

# Set up a logger for this module
logger = logging.getLogger(__name__)

# Order of the per-bucket feature vector
FEATURE_COLUMNS = [
    'hour_of_day', 'day_of_week', 'cpu_fraction', 'memory_fraction',
    'request_count', 'is_weekend', 'is_holiday',
]
TARGET_COLUMNS = ['cpu_fraction', 'memory_fraction']


def build_feature_frame(timestamps, request_count=0.0, extra_holidays=()) -> pd.DataFrame:
    """Derives the calendar features for a sequence of hourly timestamps."""
    ts = pd.to_datetime(pd.Series(timestamps)).reset_index(drop=True)
    extra_holidays = list(extra_holidays)
    frame = pd.DataFrame({'timestamp': ts})
    frame['hour_of_day'] = ts.dt.hour.astype(int)
    frame['day_of_week'] = ts.dt.dayofweek.astype(int)
    frame['is_weekend'] = (frame['day_of_week'] >= 5).astype(int)
    frame['is_holiday'] = [int(is_holiday(t, extra_holidays)) for t in ts]
    frame['request_count'] = np.asarray(request_count, dtype=float) if np.ndim(request_count) else float(request_count)
    return frame


def prepare_training_frame(history: pd.DataFrame, config=None) -> pd.DataFrame:
    """
    Turns hourly aggregates into training rows: calendar features plus
    CPU/memory normalized to [0, 1].
    """
    config = config or settings
    frame = build_feature_frame(history['hour'], history['request_count'].to_numpy(), config.extra_holidays)
    frame['cpu_fraction'] = history['avg_cpu'].astype(float).to_numpy() / 100
    frame['memory_fraction'] = history['avg_memory'].astype(float).to_numpy() / 100
    return frame[['timestamp'] + FEATURE_COLUMNS]


class SeasonalProfileModel:
    """
    Weekly seasonal profile: mean CPU/memory fraction per (day of week, hour),
    falling back to the hour-of-day mean and then the global mean. Holiday
    buckets scale the profile by a factor learnt from past holidays.
    """
    backend = "seasonal"

    def fit(self, frame: pd.DataFrame):
        if frame.empty:
            raise InsufficientDataError("Cannot fit a seasonal profile on an empty frame.")
        regular = frame[frame['is_holiday'] == 0]
        if regular.empty:
            regular = frame
        self.weekly_profile_ = regular.groupby(['day_of_week', 'hour_of_day'])[TARGET_COLUMNS].mean()
        self.hourly_profile_ = regular.groupby('hour_of_day')[TARGET_COLUMNS].mean()
        self.global_mean_ = regular[TARGET_COLUMNS].mean().to_numpy()

        self.holiday_factor_ = np.ones(len(TARGET_COLUMNS))
        holidays = frame[frame['is_holiday'] == 1]
        if not holidays.empty:
            expected = self._profile(holidays).mean(axis=0)
            observed = holidays[TARGET_COLUMNS].mean().to_numpy()
            self.holiday_factor_ = np.where(expected > 0, observed / np.where(expected > 0, expected, 1), 1.0)
        return self

    def _profile(self, features: pd.DataFrame) -> np.ndarray:
        keys = pd.MultiIndex.from_arrays(
            [features['day_of_week'].to_numpy(), features['hour_of_day'].to_numpy()],
            names=['day_of_week', 'hour_of_day'],
        )
        weekly = self.weekly_profile_.reindex(keys).to_numpy()
        hourly = self.hourly_profile_.reindex(features['hour_of_day'].to_numpy()).to_numpy()
        values = np.where(np.isnan(weekly), hourly, weekly)
        return np.where(np.isnan(values), self.global_mean_, values)

    def predict(self, features: pd.DataFrame) -> np.ndarray:
        values = self._profile(features)
        holiday_mask = features['is_holiday'].to_numpy()[:, None] == 1
        values = np.where(holiday_mask, values * self.holiday_factor_, values)
        return np.clip(values, 0.0, 1.0)


class ProphetScalingModel:
    """One Prophet model per target with daily/weekly seasonality and the holiday calendar."""
    backend = "prophet"

    def __init__(self, extra_holidays=()):
        self.extra_holidays = list(extra_holidays)
        self.models_ = {}

    def fit(self, frame: pd.DataFrame):
        if len(frame) < 2:
            raise InsufficientDataError("Prophet needs at least 2 training rows.")
        start = frame['timestamp'].min()
        # Cover a year past the training data so future holidays are known
        end = frame['timestamp'].max() + timedelta(days=366)
        holidays = holidays_frame(start, end, self.extra_holidays)

        for target in TARGET_COLUMNS:
            model = Prophet(
                holidays=holidays if not holidays.empty else None,
                daily_seasonality=True,
                weekly_seasonality=True,
                yearly_seasonality=False,
            )
            model.fit(pd.DataFrame({'ds': frame['timestamp'], 'y': frame[target]}))
            self.models_[target] = model
        return self

    def predict(self, features: pd.DataFrame) -> np.ndarray:
        future = pd.DataFrame({'ds': features['timestamp']})
        columns = [self.models_[target].predict(future)['yhat'].to_numpy() for target in TARGET_COLUMNS]
        return np.clip(np.column_stack(columns), 0.0, 1.0)


def create_model(config=None):
    config = config or settings
    if config.scaling_model_backend == "seasonal":
        return SeasonalProfileModel()
    if config.scaling_model_backend == "prophet":
        return ProphetScalingModel(config.extra_holidays)
    raise ValueError(f"Invalid scaling_model_backend: {config.scaling_model_backend}.")


# --- Per-tenant model lifecycle ---

@dataclass
class ModelEntry:
    model: object
    version: str
    trained_at: datetime


class ModelCache:
    """
    Trained models keyed by project. An entry is evicted once it is older
    than the TTL or was trained for another model version. Every lookup
    and insert sweeps the whole map, so idle tenants do not pin models.
    """

    def __init__(self):
        self._entries = {}
        self._lock = threading.Lock()

    def _sweep(self, version: str, ttl_seconds: int | None, now: datetime) -> None:
        # caller holds the lock
        expired = [
            project_id for project_id, entry in self._entries.items()
            if entry.version != version
            or (ttl_seconds is not None and now - entry.trained_at > timedelta(seconds=ttl_seconds))
        ]
        for project_id in expired:
            del self._entries[project_id]
        if expired:
            logger.info(f"Evicted {len(expired)} cached scaling models")

    def get(self, project_id: str, version: str, ttl_seconds: int, now: datetime | None = None):
        now = now or datetime.utcnow()
        with self._lock:
            self._sweep(version, ttl_seconds, now)
            entry = self._entries.get(project_id)
            return entry.model if entry is not None else None

    def put(self, project_id: str, model, version: str, trained_at: datetime | None = None,
            ttl_seconds: int | None = None, now: datetime | None = None) -> None:
        trained_at = trained_at or datetime.utcnow()
        with self._lock:
            self._sweep(version, ttl_seconds, now or datetime.utcnow())
            self._entries[project_id] = ModelEntry(model, version, trained_at)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


model_cache = ModelCache()


def checkpoint_dir(project_id: str, config=None) -> str:
    config = config or settings
    return os.path.join(config.model_registry_path, project_id, config.model_version)


def save_checkpoint(project_id: str, model, training_frame: pd.DataFrame, config=None, trained_at=None) -> str:
    """Saves a model file with its training metadata beside it."""
    config = config or settings
    version_path = checkpoint_dir(project_id, config)
    model_filepath = os.path.join(version_path, "model.joblib")
    metadata = {
        "backend": model.backend,
        "model_version": config.model_version,
        "trained_at": (trained_at or datetime.utcnow()).isoformat(),
        "training_data_points": len(training_frame),
        "data_start_date": str(training_frame['timestamp'].min()),
        "data_end_date": str(training_frame['timestamp'].max()),
    }
    os.makedirs(version_path, exist_ok=True)
    joblib.dump(model, model_filepath)
    with open(os.path.join(version_path, "metadata.json"), "w", encoding="utf-8") as f:
        json.dump(metadata, f)
    logger.info(f"Model checkpoint saved to: {model_filepath}")
    return model_filepath


def load_checkpoint(project_id: str, config=None, now: datetime | None = None):
    """
    Loads a fresh checkpoint for the project. Returns (model, trained_at),
    or None if no checkpoint exists or it has outlived the model TTL.
    Raises ModelLoadError if the files exist but fail to load.
    """
    config = config or settings
    version_path = checkpoint_dir(project_id, config)
    model_filepath = os.path.join(version_path, "model.joblib")
    metadata_path = os.path.join(version_path, "metadata.json")
    if not (os.path.exists(model_filepath) and os.path.exists(metadata_path)):
        return None

    try:
        with open(metadata_path, encoding="utf-8") as f:
            metadata = json.load(f)
        trained_at = datetime.fromisoformat(metadata["trained_at"])
        if metadata.get("backend") != config.scaling_model_backend:
            return None
        if (now or datetime.utcnow()) - trained_at > timedelta(seconds=config.model_ttl_seconds):
            return None
        model = joblib.load(model_filepath)
    except Exception as e:
        raise ModelLoadError(f"Failed to load model checkpoint from {version_path}. Error: {e}")
    return model, trained_at


def get_scaling_model(project_id: str, training_frame: pd.DataFrame, config=None, now=None, force_retrain=False):
    """Returns the project's model: memory cache, then checkpoint, then a fresh fit."""
    config = config or settings
    if not force_retrain:
        model = model_cache.get(project_id, config.model_version, config.model_ttl_seconds, now)
        if model is not None:
            return model
        try:
            loaded = load_checkpoint(project_id, config, now)
        except ModelLoadError as e:
            logger.warning(f"{e} Retraining.")
            loaded = None
        if loaded is not None:
            model, trained_at = loaded
            model_cache.put(project_id, model, config.model_version, trained_at, config.model_ttl_seconds, now)
            logger.info(f"Loaded scaling model checkpoint for project: {project_id}")
            return model

    logger.info(f"Training {config.scaling_model_backend} scaling model for project {project_id} on {len(training_frame)} buckets")
    trained_at = now or datetime.utcnow()
    model = create_model(config).fit(training_frame)
    try:
        save_checkpoint(project_id, model, training_frame, config, trained_at)
    except OSError as e:
        logger.error(f"Could not write model checkpoint for project {project_id}: {e}")
    model_cache.put(project_id, model, config.model_version, trained_at, config.model_ttl_seconds, now)
    return model


# --- Forecast generation ---

def recommended_replicas(cpu_fraction: float, config=None) -> int:
    config = config or settings
    required = cpu_fraction / (config.per_replica_cpu_fraction * config.target_utilization)
    return max(config.min_replicas, math.ceil(required))


def build_scaling_forecast(project_id: str, history: pd.DataFrame, model=None, start=None, config=None) -> ScalingForecast:
    """
    Projects CPU/memory utilization for the next horizon of hourly buckets.
    Raises InsufficientDataError with fewer than `scaling_min_samples` buckets.
    """
    config = config or settings
    require_min_rows(history, config.scaling_min_samples, "hourly metrics")
    if model is None:
        model = create_model(config).fit(prepare_training_frame(history, config))

    generated_at = datetime.utcnow()
    if start is None:
        start = pd.Timestamp(generated_at).floor('h') + pd.Timedelta(hours=1)
    timestamps = pd.date_range(pd.Timestamp(start), periods=config.forecast_horizon_hours, freq='h')
    # Request volume is unknown ahead of time, hold it at the assumed average
    features = build_feature_frame(timestamps, config.assumed_request_count, config.extra_holidays)
    predictions = model.predict(features)

    forecast = []
    for ts, (cpu_fraction, memory_fraction) in zip(timestamps, predictions):
        forecast.append(ForecastPoint(
            timestamp=ts.to_pydatetime(),
            estimated_cpu_pct=round(float(cpu_fraction) * 100, 2),
            estimated_memory_pct=round(float(memory_fraction) * 100, 2),
            recommended_replicas=recommended_replicas(float(cpu_fraction), config),
            confidence=config.scaling_confidence,
        ))

    cpu_values = [p.estimated_cpu_pct for p in forecast]
    summary = ScalingSummary(
        avg_cpu_predicted=round(sum(cpu_values) / len(cpu_values), 2),
        peak_cpu_predicted=max(cpu_values),
        recommended_autoscale_min=config.min_replicas,
        recommended_autoscale_max=max(p.recommended_replicas for p in forecast),
    )
    return ScalingForecast(
        project_id=project_id,
        model_backend=getattr(model, "backend", config.scaling_model_backend),
        generated_at=generated_at,
        forecast=forecast,
        summary=summary,
    )


def generate_scaling_forecast(project_id: str, engine=None, cache=None, config=None) -> ScalingForecast:
    """Reads history, resolves the project's model, forecasts and caches the result."""
    config = config or settings
    history = fetch_hourly_metrics(
        project_id, days=config.scaling_history_days, min_rows=config.scaling_min_samples, engine=engine
    )
    model = get_scaling_model(project_id, prepare_training_frame(history, config), config)
    forecast = build_scaling_forecast(project_id, history, model=model, config=config)
    cache_result(f"scaling_forecast:{project_id}", config.scaling_forecast_ttl_seconds, forecast, cache)
    return forecast


def retrain_scaling_model(project_id: str, engine=None, config=None) -> dict:
    """Forces a retrain and checkpoint of a project's scaling model."""
    config = config or settings
    try:
        history = fetch_hourly_metrics(
            project_id, days=config.scaling_history_days, min_rows=config.scaling_min_samples, engine=engine
        )
    except InsufficientDataError as e:
        logger.warning(f"Skipping retrain for project '{project_id}': {e}")
        return {"status": "failed", "reason": str(e)}

    get_scaling_model(project_id, prepare_training_frame(history, config), config, force_retrain=True)
    return {"status": "success", "project_id": project_id, "training_data_points": len(history)}
