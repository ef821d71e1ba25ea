"""
Health and metrics endpoints served from inside the worker process.
"""

import psutil
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..core.exceptions import error_registry
from ..utils.metrics import REGISTRY


def create_health_app(consumer) -> FastAPI:
    """
    Build the health application.

    Args:
        consumer: QueueConsumer whose state is reported

    Returns:
        FastAPI application exposing ``/health`` and ``/metrics``
    """
    app = FastAPI(title="media-job-worker", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/health")
    async def health_check():
        """Worker health endpoint."""
        snapshot = consumer.health_snapshot()
        return {
            "status": "healthy" if snapshot["accepting"] else "stopping",
            "in_flight": snapshot["in_flight"],
            "jobs": snapshot["jobs"],
            "accepting": snapshot["accepting"],
            "cpu_percent": psutil.cpu_percent(),
            "memory_percent": psutil.virtual_memory().percent,
            "errors": error_registry.get_error_statistics(),
        }

    @app.get("/metrics")
    async def prometheus_metrics():
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app
