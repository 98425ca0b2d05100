from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from app.repository.token_index import TokenIndex
from app.routes.file_routes import router
from app.services.errors import StorageError
from app.services.storage_service import StorageService
from config import StorageConfig
from logger_config import setup_logger

logger = setup_logger()


def create_app(storage_config: Optional[StorageConfig] = None) -> FastAPI:
    """Build the HTTP app. The storage config is read from the environment when not given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = storage_config or StorageConfig.from_env()
        token_index = TokenIndex.from_url(settings.database_url)
        app.state.storage_service = StorageService(settings, token_index)
        await app.state.storage_service.initialize()
        yield
        token_index.dispose()

    app = FastAPI(title="Token File Storage", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "x-api-key", "filePath"],
    )

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    logger.info("Starting token file storage server...")
    logger.info(f"Storage root: {config.STORAGE_ROOT}")
    logger.info(f"Temporary directory: {config.TEMP_DIR}")
    logger.info(f"Maximum upload size: {config.MAX_LENGTH / (1024*1024):.2f} MB")
    uvicorn.run(app, host=config.HOST, port=config.PORT)
