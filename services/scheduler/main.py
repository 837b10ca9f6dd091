from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from fastapi import FastAPI, Request

from app.config import get_settings
from app.core.logging import configure_logging
from medassist import Runtime, build_runtime, seed_demo_data
from services.scheduler.sweeper import SweepTimer
from shared.contracts.models import SweepReport


@asynccontextmanager
async def runtime_lifespan(
    app: FastAPI,
    runtime: Runtime | None = None,
    run_timer: bool = False,
) -> AsyncIterator[None]:
    """Attach a runtime to ``app.state`` for the life of the app.

    Only the scheduler service passes ``run_timer=True``, so a deployment
    runs exactly one sweep timer however many API workers it has.
    """
    runtime = runtime or build_runtime(get_settings())
    settings = runtime.settings
    configure_logging(settings.log_level, settings.log_json)
    if settings.seed_demo_data:
        seed_demo_data(runtime)

    app.state.runtime = runtime
    timer = None
    if run_timer:
        timer = SweepTimer(
            jobs=[runtime.flow.run_sweep_once, runtime.auth.cleanup_expired_sessions, runtime.limiter.prune],
            interval_seconds=settings.sweep_interval_seconds,
        )
        app.state.sweep_timer = timer
        if settings.sweep_enabled:
            runtime.auth.cleanup_expired_sessions()
            timer.start()
    try:
        yield
    finally:
        if timer is not None:
            await timer.stop()
        runtime.close()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def create_app(runtime: Runtime | None = None) -> FastAPI:
    app = FastAPI(title="scheduler", lifespan=lambda a: runtime_lifespan(a, runtime, run_timer=True))

    @app.get("/health")
    def health(request: Request) -> dict[str, str | bool]:
        current = get_runtime(request)
        return {
            "status": "ok",
            "service": "scheduler",
            "timezone": current.settings.app_timezone,
            "sweep_running": request.app.state.sweep_timer.running,
            "time": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/jobs/tick")
    def tick(request: Request) -> SweepReport:
        return get_runtime(request).flow.run_sweep_once()

    return app


app = create_app()
