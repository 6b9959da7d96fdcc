# ops_engine/main.py
import logging
from typing import Annotated

from fastapi import FastAPI, BackgroundTasks, Request, Query
from fastapi.responses import JSONResponse

from .settings import settings
from .schemas import AnomalyReport, BuildAnalysis, CostForecast, ResourceRecommendation, ScalingForecast
from .custom_exceptions import InsufficientDataError, UpstreamReadError

from .scaling_manager import generate_scaling_forecast, retrain_scaling_model
from .anomaly_manager import detect_anomalies
from .cost_manager import forecast_costs
from .build_manager import analyze_build_optimization
from .rightsizing_manager import get_resource_recommendations

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Predictive Operations Engine",
    description="Scaling forecasts, anomaly detection, cost forecasts, build analysis and right-sizing.",
    version="1.0.0"
)


# --- Background Task Definition ---

def run_scaling_retrain(project_id: str):
    """Retrains a project's scaling model off the request path."""
    logger.info(f"--- Starting scaling model retrain for project {project_id} ---")
    result = retrain_scaling_model(project_id)
    if result.get("status") == "success":
        logger.info(f"--- Scaling model retrain finished for project {project_id} ---")
    else:
        logger.warning(f"--- Scaling model retrain skipped for project {project_id}. Reason: {result.get('reason')} ---")


# --- Exception Handlers ---
@app.exception_handler(InsufficientDataError)
async def insufficient_data_exception_handler(request: Request, exc: InsufficientDataError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "reason": "needs_more_history"},
    )

@app.exception_handler(UpstreamReadError)
async def upstream_read_exception_handler(request: Request, exc: UpstreamReadError):
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc)},
    )


# --- Scaling Endpoints ---
@app.get("/scaling/{project_id}/forecast", response_model=ScalingForecast, tags=["Scaling"])
def get_scaling_forecast(project_id: str) -> ScalingForecast:
    """Projects CPU/memory demand and replica counts for the next 168 hours."""
    return generate_scaling_forecast(project_id)

@app.post("/scaling/{project_id}/train", status_code=202, tags=["Scaling"])
def trigger_scaling_retrain(project_id: str, background_tasks: BackgroundTasks):
    """Schedules a retrain of the project's scaling model in the background."""
    background_tasks.add_task(run_scaling_retrain, project_id)
    return {"message": f"Scaling model retrain for project '{project_id}' started in the background."}


# --- Anomaly Endpoints ---
@app.get("/anomalies/{team_id}", response_model=AnomalyReport, tags=["Anomalies"])
def get_anomalies(team_id: str) -> AnomalyReport:
    return detect_anomalies(team_id)


# --- Cost Endpoints ---
@app.get("/costs/{team_id}/forecast", response_model=CostForecast, tags=["Costs"])
def get_cost_forecast(team_id: str) -> CostForecast:
    return forecast_costs(team_id)


# --- Build Endpoints ---
@app.get("/builds/{project_id}/analysis", response_model=BuildAnalysis, tags=["Builds"])
def get_build_analysis(
    project_id: str,
    last_n: Annotated[int | None, Query(gt=0, le=200, description="Number of recent builds to analyze.")] = None,
) -> BuildAnalysis:
    return analyze_build_optimization(project_id, last_n)


# --- Right-sizing Endpoints ---
@app.get("/resources/{project_id}/recommendations", response_model=ResourceRecommendation, tags=["Resources"])
def get_resource_recommendation(project_id: str) -> ResourceRecommendation:
    return get_resource_recommendations(project_id)
