"""Pod admission endpoint.

The API server posts an ``admission.k8s.io/v1`` AdmissionReview and
appends ``?timeout=<n>s``, the time it is willing to wait for a verdict.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from fastapi import APIRouter, Body, Query
from pydantic import ValidationError

from workload_identity.models import AdmissionRequest, AdmissionResponse
from workload_identity.webhook.injector import STATUS_BAD_REQUEST, CredentialInjector

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admission"])

_injector: CredentialInjector | None = None

_TIMEOUT_RE = re.compile(r"^(?P<value>\d+(?:\.\d+)?)(?P<unit>ms|s|m)?$")
_TIMEOUT_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0}


def init_router(injector: CredentialInjector) -> None:
    global _injector  # noqa: PLW0603
    _injector = injector


def _svc() -> CredentialInjector:
    assert _injector is not None, "CredentialInjector not initialized"
    return _injector


def parse_timeout(value: str | None) -> float | None:
    """Parse the API server's ``timeout`` query parameter into seconds."""
    if not value:
        return None
    match = _TIMEOUT_RE.match(value.strip())
    if match is None:
        logger.warning("Ignoring unparsable admission timeout %r", value)
        return None
    return float(match["value"]) * _TIMEOUT_UNITS[match["unit"] or "s"]


def _review(
    review: dict[str, Any] = Body(...),  # noqa: B008
    timeout: str | None = Query(None),
) -> dict[str, Any]:
    raw_request = review.get("request")
    if not isinstance(raw_request, dict):
        return AdmissionResponse(
            allowed=False,
            status_code=STATUS_BAD_REQUEST,
            message="AdmissionReview has no request",
        ).to_review()

    try:
        request = AdmissionRequest.model_validate(raw_request)
    except ValidationError as exc:
        return AdmissionResponse(
            uid=str(raw_request.get("uid") or ""),
            allowed=False,
            status_code=STATUS_BAD_REQUEST,
            message=f"invalid admission request: {exc}",
        ).to_review()

    injector = _svc()
    deadline = injector.deadline_after(parse_timeout(timeout))
    return injector.handle(request, deadline).to_review()


router.add_api_route("/mutate", _review, methods=["POST"])
router.add_api_route("/", _review, methods=["POST"], include_in_schema=False)
