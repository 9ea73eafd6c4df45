from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import api
from .config import get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: switch unused integrations back to EMAIL_PROVIDER_TYPE=stub / "
                + "LLM_PROVIDER_TYPE=stub or set the required credentials."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if settings.monitor_autostart and api.monitor is not None:
            api.monitor.start()
        yield
        if api.monitor is not None:
            api.monitor.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.include_router(api.router)
    return app


app = create_app()
