"""
ProductGuard Enforcement Engine - Request Dependencies
Accessors for app-owned collaborators and service-outcome translation.
"""
from typing import Any, Dict

from fastapi import HTTPException, Request

from .config import PipelineConfig

# Service error codes -> HTTP status
ERROR_STATUS = {
    "not_found": 404,
    "conflict": 409,
    "invalid": 400,
}


def get_pipeline_config(request: Request) -> PipelineConfig:
    return request.app.state.pipeline_config


def get_mailer(request: Request):
    return request.app.state.mailer


def get_rate_limiter(request: Request):
    return request.app.state.rate_limiter


def get_scan_collaborators(request: Request):
    """Classifier and profiler are deployment-provided; 503 until wired."""
    classifier = getattr(request.app.state, "classifier", None)
    if classifier is None:
        raise HTTPException(status_code=503, detail="Classification collaborator not configured")
    return classifier, getattr(request.app.state, "profiler", None)


def raise_for_error(result: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a failed service outcome into an HTTPException."""
    if result.get("success", True):
        return result
    status_code = ERROR_STATUS.get(result.get("error_code"), 400)
    raise HTTPException(status_code=status_code, detail=result.get("error") or result.get("message"))
