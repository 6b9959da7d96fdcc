# ops_engine/timeseries_reader.py
import logging
from datetime import datetime, timedelta

import pandas as pd
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .db_utils import get_db_engine
from .schemas import BuildRecord, MetricSample, UsageRecord
from .custom_exceptions import InsufficientDataError, UpstreamReadError

# Set up a logger for this module
logger = logging.getLogger(__name__)

# pd.read_sql re-raises execution errors as pandas' own DatabaseError
STORE_ERRORS = (SQLAlchemyError, pd.errors.DatabaseError)

TEAM_DEPLOYMENTS_SUBQUERY = """
    SELECT d.id FROM deployments d
    JOIN projects p ON d.project_id = p.id
    WHERE p.team_id = :team_id
"""

# Row model field -> reader column
HOURLY_SAMPLE_COLUMNS = {
    "timestamp": "hour",
    "avg_cpu_pct": "avg_cpu",
    "avg_memory_pct": "avg_memory",
    "max_cpu_pct": "max_cpu",
    "max_memory_pct": "max_memory",
    "request_count": "request_count",
}
USAGE_RECORD_COLUMNS = {"metric_type": "metric_type", "quantity": "total_qty", "billed_at_day": "day"}
BUILD_RECORD_COLUMNS = {
    "id": "id",
    "status": "status",
    "duration_seconds": "duration_seconds",
    "artifact_size_mb": "artifact_size_mb",
    "cache_hit_rate": "cache_hit_rate",
    "created_at": "created_at",
}


def _utcnow():
    return datetime.utcnow()


def require_min_rows(frame: pd.DataFrame, min_rows: int, what: str) -> pd.DataFrame:
    """
    Checks that a fetched frame carries at least `min_rows` rows.
    Raises InsufficientDataError otherwise.
    """
    if len(frame) < min_rows:
        raise InsufficientDataError(
            f"Insufficient {what}: need at least {min_rows} rows, found {len(frame)}."
        )
    return frame


def validate_rows(frame: pd.DataFrame, model, columns: dict, what: str, constants: dict | None = None) -> pd.DataFrame:
    """
    Validates every row against a pydantic row model and drops the ones
    that fail. `columns` maps model fields to frame columns; `constants`
    supplies fields that are fixed for the whole query.
    """
    keep = []
    for record in frame.to_dict('records'):
        row = {field: record.get(column) for field, column in columns.items()}
        row = {k: (None if not isinstance(v, str) and pd.isna(v) else v) for k, v in row.items()}
        row.update(constants or {})
        try:
            model.model_validate(row)
            keep.append(True)
        except ValidationError as e:
            logger.warning(f"Dropping malformed {what} row: {e.errors()[0]['loc']} {e.errors()[0]['msg']}")
            keep.append(False)
    if all(keep):
        return frame
    return frame[keep].reset_index(drop=True)


def _read_frame(query, params: dict, engine, what: str) -> pd.DataFrame:
    engine = engine or get_db_engine()
    try:
        with engine.connect() as connection:
            return pd.read_sql(query, connection, params=params)
    except STORE_ERRORS as e:
        logger.error(f"Failed to read {what} from the metrics store: {e}")
        raise UpstreamReadError(f"Failed to read {what}.") from e


def fetch_hourly_metrics(project_id: str, days: int = 90, min_rows: int = 0, engine=None) -> pd.DataFrame:
    """Fetches hourly CPU/memory aggregates for every deployment of a project."""
    logger.info(f"Fetching {days} days of hourly metrics for project: {project_id}")
    query = text("""
        SELECT
            DATE_TRUNC('hour', timestamp) AS hour,
            AVG(cpu_usage) AS avg_cpu,
            AVG(memory_usage) AS avg_memory,
            MAX(cpu_usage) AS max_cpu,
            MAX(memory_usage) AS max_memory,
            COUNT(*) AS request_count
        FROM deployment_metrics
        WHERE deployment_id IN (SELECT id FROM deployments WHERE project_id = :project_id)
        AND timestamp > :since
        GROUP BY DATE_TRUNC('hour', timestamp)
        ORDER BY hour ASC
    """)
    params = {"project_id": project_id, "since": _utcnow() - timedelta(days=days)}
    df = _read_frame(query, params, engine, "hourly metrics")
    df['hour'] = pd.to_datetime(df['hour']).dt.tz_localize(None)
    df = validate_rows(df, MetricSample, HOURLY_SAMPLE_COLUMNS, "hourly metrics")
    return require_min_rows(df, min_rows, "hourly metrics")


def fetch_deployment_stats(team_id: str, window: timedelta, now: datetime | None = None, engine=None) -> pd.DataFrame:
    """
    Fetches per-deployment aggregates for a team over the trailing `window`.
    Used for both the short recent window and the long baseline.
    """
    query = text(f"""
        SELECT
            deployment_id,
            AVG(cpu_usage) AS cpu,
            AVG(memory_usage) AS memory,
            AVG(response_time_ms) AS latency,
            STDDEV(response_time_ms) AS latency_stddev,
            SUM(error_count) AS error_count,
            SUM(request_count) AS request_count
        FROM deployment_metrics
        WHERE deployment_id IN ({TEAM_DEPLOYMENTS_SUBQUERY})
        AND timestamp > :since
        GROUP BY deployment_id
    """)
    params = {"team_id": team_id, "since": (now or _utcnow()) - window}
    return _read_frame(query, params, engine, "deployment stats")


def fetch_daily_usage(team_id: str, days: int = 90, min_rows: int = 0, engine=None) -> pd.DataFrame:
    """Fetches daily usage totals per metric type for a team."""
    logger.info(f"Fetching {days} days of usage records for team: {team_id}")
    query = text("""
        SELECT
            DATE_TRUNC('day', billed_at) AS day,
            metric_type,
            SUM(quantity) AS total_qty
        FROM usage_records
        WHERE team_id = :team_id
        AND billed_at > :since
        GROUP BY DATE_TRUNC('day', billed_at), metric_type
        ORDER BY day ASC
    """)
    params = {"team_id": team_id, "since": _utcnow() - timedelta(days=days)}
    df = _read_frame(query, params, engine, "usage records")
    df = validate_rows(df, UsageRecord, USAGE_RECORD_COLUMNS, "usage records", {"team_id": team_id})
    return require_min_rows(df, min_rows, "usage records")


def previous_month_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Returns [start, end) of the calendar month before `now`."""
    end = datetime(now.year, now.month, 1)
    if now.month == 1:
        start = datetime(now.year - 1, 12, 1)
    else:
        start = datetime(now.year, now.month - 1, 1)
    return start, end


def fetch_previous_month_cost(team_id: str, now: datetime | None = None, engine=None) -> float:
    """Returns the invoiced total of the previous calendar month (0.0 when none)."""
    start, end = previous_month_bounds(now or _utcnow())
    query = text("""
        SELECT COALESCE(SUM(amount), 0) AS total FROM invoices
        WHERE team_id = :team_id
        AND invoice_date >= :start AND invoice_date < :end
    """)
    df = _read_frame(query, {"team_id": team_id, "start": start, "end": end}, engine, "invoices")
    if df.empty or pd.isna(df['total'].iloc[0]):
        return 0.0
    return float(df['total'].iloc[0])


def fetch_recent_builds(project_id: str, limit: int = 20, min_rows: int = 0, engine=None) -> pd.DataFrame:
    """Fetches the most recent builds of a project, newest first."""
    query = text("""
        SELECT CAST(id AS TEXT) AS id, status, duration_seconds, artifact_size_mb, cache_hit_rate, created_at
        FROM builds
        WHERE project_id = :project_id
        ORDER BY created_at DESC
        LIMIT :limit
    """)
    df = _read_frame(query, {"project_id": project_id, "limit": limit}, engine, "builds")
    df = validate_rows(df, BuildRecord, BUILD_RECORD_COLUMNS, "build records", {"project_id": project_id})
    return require_min_rows(df, min_rows, "build records")


def fetch_usage_percentiles(project_id: str, days: int = 30, engine=None) -> dict:
    """
    Fetches avg/peak/P95/P99 of CPU and memory usage for a project.
    Values are percentages of the platform default allocation; None when no samples exist.
    """
    query = text("""
        SELECT
            AVG(cpu_usage) AS avg_cpu,
            MAX(cpu_usage) AS peak_cpu,
            PERCENTILE_CONT(0.95) WITHIN GROUP (ORDER BY cpu_usage) AS p95_cpu,
            PERCENTILE_CONT(0.99) WITHIN GROUP (ORDER BY cpu_usage) AS p99_cpu,
            AVG(memory_usage) AS avg_memory,
            MAX(memory_usage) AS peak_memory,
            PERCENTILE_CONT(0.95) WITHIN GROUP (ORDER BY memory_usage) AS p95_memory,
            PERCENTILE_CONT(0.99) WITHIN GROUP (ORDER BY memory_usage) AS p99_memory
        FROM deployment_metrics
        WHERE deployment_id IN (SELECT id FROM deployments WHERE project_id = :project_id)
        AND timestamp > :since
    """)
    params = {"project_id": project_id, "since": _utcnow() - timedelta(days=days)}
    df = _read_frame(query, params, engine, "usage percentiles")
    if df.empty:
        return {}
    return {k: (None if pd.isna(v) else float(v)) for k, v in df.iloc[0].items()}


def fetch_team_webhook_url(team_id: str, engine=None) -> str | None:
    query = text("SELECT webhook_url FROM teams WHERE id = :team_id")
    df = _read_frame(query, {"team_id": team_id}, engine, "team webhook")
    if df.empty or pd.isna(df['webhook_url'].iloc[0]):
        return None
    return str(df['webhook_url'].iloc[0]) or None


def save_build_analysis(project_id: str, analysis_json: str, engine=None) -> None:
    """Persists a build-analysis snapshot for audit/history purposes."""
    engine = engine or get_db_engine()
    insert_sql = text("""
        INSERT INTO build_analysis (project_id, analysis_data, created_at)
        VALUES (:project_id, :analysis_data, :created_at)
    """)
    try:
        with engine.begin() as connection:
            connection.execute(
                insert_sql,
                {"project_id": project_id, "analysis_data": analysis_json, "created_at": _utcnow()},
            )
    except SQLAlchemyError as e:
        logger.error(f"Failed to persist build analysis for project {project_id}: {e}")
        raise UpstreamReadError(f"Failed to persist build analysis for project '{project_id}'.") from e
    logger.info(f"Saved build analysis snapshot for project: {project_id}")
