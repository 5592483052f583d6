from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from runflow.api.errors import install_error_handlers
from runflow.api.routes_health import router as health_router
from runflow.api.routes_runs import router as runs_router
from runflow.api.routes_threads import router as threads_router
from runflow.api.routes_ws import router as ws_router
from runflow.core.config import Settings, get_settings
from runflow.core.logging import configure_logging
from runflow.services.runtime import Runtime


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        s = settings or get_settings()
        configure_logging(s.LOG_LEVEL)
        rt = runtime or Runtime(s)
        await rt.start()
        app.state.runtime = rt

        yield

        await rt.stop()

    app = FastAPI(title="Runflow", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Pagination-Total"],
    )

    install_error_handlers(app)
    app.include_router(health_router)
    app.include_router(threads_router)
    app.include_router(runs_router)
    app.include_router(ws_router)
    return app


app = create_app()
