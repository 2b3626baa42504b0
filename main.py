"""FastAPI application for the conversation orchestration engine"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment variables
load_dotenv()

from config import settings
from api.routes import conversation
from core.container import ConversationRuntime, build_runtime

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(runtime: Optional[ConversationRuntime] = None) -> FastAPI:
    """Build the application; a prebuilt runtime replaces the settings-driven one"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = runtime or build_runtime(settings)
        app.state.runtime = active
        await active.start()
        try:
            yield
        finally:
            await active.shutdown()

    app = FastAPI(
        title="Conversation Orchestration API",
        version="1.0.0",
        description="Multi-turn dialogue orchestration over a chat model backend",
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        detail = exc.detail
        message = "; ".join(detail) if isinstance(detail, list) else str(detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "data": detail if isinstance(detail, list) else None, "message": message},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        logger.warning(f"Rejected malformed request to {request.url.path}: {errors}")
        return JSONResponse(
            status_code=400,
            content={"success": False, "data": errors, "message": "Invalid request"},
        )

    @app.get("/health")
    async def health_check():
        """Liveness probe; component health is under /api/ai/health"""
        return {"status": "healthy"}

    @app.get("/api")
    async def api_root():
        """API root endpoint"""
        return {"message": "Conversation Orchestration API", "version": "1.0.0"}

    # Include routers
    app.include_router(conversation.router, prefix="/api/ai", tags=["conversation"])

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
