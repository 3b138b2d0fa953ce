import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routers import chat, data_upload, documents, health, messages, session
from db.database import init_db
from rag_agent.exception.custom_exception import UploadValidationError
from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.src.services import AppServices, build_services


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """
    Build the FastAPI app. Services are wired in the lifespan unless given,
    so importing this module never loads models or touches the database.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Application startup initiated")
        svc = services or build_services()
        app.state.services = svc

        await init_db(svc.engine)
        await svc.runner.resume_pending()

        stop = asyncio.Event()
        sweeper = asyncio.create_task(svc.lifecycle.run_sweeper(svc.sweep_interval_seconds, stop))
        yield

        stop.set()
        await sweeper
        await svc.runner.shutdown()
        log.info("Application shutdown")

    app = FastAPI(title="Session RAG Agent", version="1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(UploadValidationError)
    async def upload_validation_handler(request: Request, exc: UploadValidationError):
        log.warning("Upload rejected | path=%s | error=%s", request.url.path, exc.error_message)
        return JSONResponse(status_code=400, content={"success": False, "error": exc.error_message})

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception):
        log.exception("Unhandled error | path=%s", request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc) or "Internal error"})

    # Router Registration
    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(chat.router, tags=["agent"])
    app.include_router(data_upload.router, tags=["upload"])
    app.include_router(documents.router, tags=["documents"])
    app.include_router(session.router, tags=["session"])
    app.include_router(messages.router, tags=["messages"])

    @app.get("/")
    async def root():
        return {"message": "Backend is running"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
