# ops_engine/alerting.py
import logging
from datetime import datetime
from typing import List

import requests

from .settings import settings
from .schemas import Anomaly
from .custom_exceptions import AlertDeliveryError, UpstreamReadError
from .timeseries_reader import fetch_team_webhook_url

logger = logging.getLogger(__name__)

CRITICAL_ALERT = "CRITICAL_ANOMALY_DETECTED"


def deliver_alert(webhook_url: str, anomalies: List[Anomaly], timestamp: datetime, timeout: float) -> None:
    """
    POSTs the alert payload to a webhook once.
    Raises AlertDeliveryError on any transport or HTTP failure.
    """
    payload = {
        "alert": CRITICAL_ALERT,
        "anomalies": [a.model_dump(mode="json") for a in anomalies],
        "timestamp": timestamp.isoformat(),
    }
    try:
        response = requests.post(webhook_url, json=payload, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise AlertDeliveryError(f"Failed to deliver alert to {webhook_url}: {e}") from e


def notify_critical_anomalies(team_id: str, anomalies: List[Anomaly], timestamp: datetime | None = None,
                              engine=None, config=None) -> bool:
    """
    Fire-and-forget alert for a team's critical anomalies.
    Delivery problems are logged and never propagate. Returns True when an alert was sent.
    """
    config = config or settings
    try:
        webhook_url = fetch_team_webhook_url(team_id, engine=engine)
    except UpstreamReadError as e:
        logger.error(f"Could not look up webhook for team {team_id}, alert dropped: {e}")
        return False
    if not webhook_url:
        logger.info(f"Team {team_id} has no webhook configured; skipping alert.")
        return False

    try:
        deliver_alert(webhook_url, anomalies, timestamp or datetime.utcnow(), config.alert_timeout_seconds)
    except AlertDeliveryError as e:
        logger.error(f"Failed to send alert for team {team_id}: {e}")
        return False
    logger.info(f"Sent {CRITICAL_ALERT} alert with {len(anomalies)} anomalies for team {team_id}")
    return True
