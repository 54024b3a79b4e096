"""FastAPI application factory for the admission webhook and probes."""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import FastAPI

from workload_identity import __version__
from workload_identity.webhook.injector import CredentialInjector
from workload_identity.webhook.routers import admission, health

logger = logging.getLogger(__name__)


def create_app(
    injector: CredentialInjector | None = None,
    ready_check: Callable[[], bool] | None = None,
) -> FastAPI:
    """Build and return the FastAPI application.

    Without an *injector* only the probe endpoints are served, which is
    what the membership controller runs next to its work loop.
    """
    app = FastAPI(
        title="Workload Identity Operator",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )

    health.init_router(__version__, ready_check=ready_check)
    app.include_router(health.router)

    if injector is not None:
        admission.init_router(injector)
        app.include_router(admission.router)
        logger.debug("Admission endpoints enabled")

    return app
