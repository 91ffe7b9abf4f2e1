import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

# Import routers
from backend.app.routers import code_execution
from backend.app.routers import grading
from backend.app.grading.config import Settings
from backend.app.grading.services import GradingServices

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(services: Optional[GradingServices] = None, start_queue: bool = True) -> FastAPI:
    """
    Build the API app.

    Services are created from the environment at startup unless given
    (tests pass their own).
    """
    app = FastAPI(
        title="Quiz Grader API Server",
        description="Sandboxed code execution and asynchronous quiz grading.",
    )

    # --- Add CORS Middleware ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = services

    # --- Startup / Shutdown: grading workers ---
    @app.on_event("startup")
    async def startup_event():
        if app.state.services is None:
            app.state.services = GradingServices.from_settings(Settings.from_env())
        if start_queue:
            await app.state.services.start()
            logger.info(f"GradingQueue initialized with {app.state.services.settings.concurrency} workers.")

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.services is not None and start_queue:
            await app.state.services.stop()

    # --- Root, Health Check ---

    @app.get("/", include_in_schema=False)
    def read_root():
        """
        Redirects the root URL to the API documentation.
        """
        return RedirectResponse(url="/docs")

    @app.get("/health", tags=["System"])
    def health_check():
        """
        A simple health check endpoint that returns the server status.
        """
        return {"status": "ok"}

    # Code execution router (ad-hoc runs)
    app.include_router(code_execution.router)

    # Grading router (submissions, student views, queue)
    app.include_router(grading.router)

    return app


app = create_app()

# To run this server:
# 1. Make sure you are in the root directory of the project.
# 2. Run the command: uvicorn backend.api_server:app --port 8000
