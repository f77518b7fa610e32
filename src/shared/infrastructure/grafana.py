"""
Grafana OTLP Metrics Exporter
==============================

Pushes SLA evaluation metrics to Grafana Cloud via OTLP.

Metrics exported per evaluation pass:
- sla_items_evaluated: Work items evaluated
- sla_items_breached: Work items breached
- sla_items_at_risk: Work items at risk
- sla_escalations_fired: Escalation levels fired
- sla_pass_duration_ms: Pass duration in milliseconds
"""

import base64
import time
from typing import Optional, Dict, List, Any

import httpx

from src.config import settings
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

# (summary field, metric name, unit, description)
SLA_PASS_METRICS = (
    ("evaluated", "sla_items_evaluated", "1", "Work items evaluated in the pass"),
    ("breached", "sla_items_breached", "1", "Work items breached"),
    ("at_risk", "sla_items_at_risk", "1", "Work items at risk"),
    ("escalations_fired", "sla_escalations_fired", "1", "Escalation levels fired"),
    ("duration_ms", "sla_pass_duration_ms", "ms", "Evaluation pass duration in milliseconds"),
)


class GrafanaOTLPExporter:
    """
    Export SLA metrics to Grafana Cloud via OTLP HTTP endpoint.

    Uses OpenTelemetry Protocol (OTLP) JSON format with gauge metrics.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize Grafana OTLP exporter.

        Args:
            host: Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-ap-south-1.grafana.net)
            api_key: Grafana API key
            instance_id: Instance ID for authentication
            http_client: Client to post with (a short-lived one per export when None)
        """
        self._host = host or settings.grafana_host
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
        self._http_client = http_client
        self._enabled = bool(self._host and self._api_key and self._instance_id)

        if self._enabled:
            auth_pair = f"{self._instance_id}:{self._api_key}"
            self._auth_encoded = base64.b64encode(auth_pair.encode()).decode()
            # Don't double-append the path if host already includes it
            if "/otlp/v1/metrics" not in self._host:
                self._url = f"{self._host.rstrip('/')}/otlp/v1/metrics"
            else:
                self._url = self._host
            logger.info(
                "Grafana OTLP exporter initialized",
                extra={"host": self._host, "instance_id": self._instance_id}
            )
        else:
            logger.info(
                "Grafana OTLP exporter not configured - metrics will not be exported",
                extra={
                    "host_configured": bool(self._host),
                    "api_key_configured": bool(self._api_key),
                    "instance_id_configured": bool(self._instance_id)
                }
            )

    def is_enabled(self) -> bool:
        """Check if exporter is properly configured."""
        return self._enabled

    def build_payload(
        self,
        values: Dict[str, float],
        attributes: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Build an OTLP metrics payload of gauges.

        Args:
            values: Summary values keyed by summary field name
            attributes: Extra data point attributes
        """
        timestamp_ns = int(time.time() * 1_000_000_000)

        metric_attributes = [
            {"key": "service", "value": {"stringValue": settings.app_name}},
        ]
        for key, value in (attributes or {}).items():
            metric_attributes.append({"key": key, "value": {"stringValue": str(value)}})

        metrics: List[Dict[str, Any]] = []
        for field_name, metric_name, unit, description in SLA_PASS_METRICS:
            if field_name not in values:
                continue
            value = values[field_name]
            data_point = {"timeUnixNano": timestamp_ns, "attributes": metric_attributes}
            if isinstance(value, float):
                data_point["asDouble"] = value
            else:
                data_point["asInt"] = int(value)
            metrics.append({
                "name": metric_name,
                "unit": unit,
                "description": description,
                "gauge": {"dataPoints": [data_point]}
            })

        return {
            "resourceMetrics": [
                {
                    "resource": {
                        "attributes": [
                            {"key": "service.name", "value": {"stringValue": settings.app_name}},
                            {"key": "service.version", "value": {"stringValue": settings.app_version}},
                            {"key": "deployment.environment", "value": {"stringValue": settings.environment}},
                        ]
                    },
                    "scopeMetrics": [{"metrics": metrics}]
                }
            ]
        }

    async def export_sla_metrics(
        self,
        summary: Dict[str, Any],
        attributes: Optional[Dict[str, str]] = None
    ) -> bool:
        """
        Export the counters of one evaluation pass.

        Args:
            summary: ``EvaluationSummary.to_dict()``
            attributes: Additional attributes to attach to metrics

        Returns:
            True if export succeeded, False otherwise
        """
        if not self._enabled:
            logger.debug("Grafana exporter not enabled - skipping metrics export")
            return False

        payload = self.build_payload(summary, attributes)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._auth_encoded}",
            "X-Grafana-Org-Id": str(self._instance_id)
        }

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self._url, headers=headers, json=payload)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(self._url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error("Error exporting metrics to Grafana", extra={"error": str(e)})
            return False

        if response.status_code in (200, 202):
            logger.debug(
                "SLA metrics exported to Grafana",
                extra={"status_code": response.status_code}
            )
            return True

        logger.warning(
            "Failed to export metrics to Grafana",
            extra={
                "status_code": response.status_code,
                "response": response.text[:500],
                "url": self._url
            }
        )
        return False


# Global exporter instance
_grafana_exporter: Optional[GrafanaOTLPExporter] = None


def get_grafana_exporter() -> GrafanaOTLPExporter:
    """Get or create global Grafana exporter instance."""
    global _grafana_exporter
    if _grafana_exporter is None:
        _grafana_exporter = GrafanaOTLPExporter()
    return _grafana_exporter


def init_grafana_exporter(
    host: str,
    api_key: str,
    instance_id: str
) -> GrafanaOTLPExporter:
    """Initialize Grafana exporter with credentials."""
    global _grafana_exporter
    _grafana_exporter = GrafanaOTLPExporter(
        host=host,
        api_key=api_key,
        instance_id=instance_id
    )
    return _grafana_exporter
