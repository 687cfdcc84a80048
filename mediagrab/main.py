import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Security, HTTPException
from fastapi.security import APIKeyQuery, APIKeyHeader
from starlette.middleware.cors import CORSMiddleware

from mediagrab.configs import settings
from mediagrab.routes import api_router, tunnel_router
from mediagrab.stream.process_runner import ProcessRunner
from mediagrab.stream.temp_files import TempFileManager
from mediagrab.stream.tunnels import TunnelRegistry

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    temp_files = TempFileManager(
        settings.temp_dir,
        max_age=settings.temp_file_max_age,
        sweep_interval=settings.temp_sweep_interval,
    )
    app.state.temp_files = temp_files
    app.state.runner = ProcessRunner(temp_files=temp_files)
    app.state.tunnels = TunnelRegistry(settings.tunnel_secret, lifespan=settings.tunnel_lifespan)
    temp_files.start()
    logger.info(f"Enabled services: {', '.join(sorted(settings.enabled_services))}")
    try:
        yield
    finally:
        await app.state.runner.shutdown()
        await temp_files.stop()


app = FastAPI(lifespan=lifespan)
api_password_query = APIKeyQuery(name="api_password", auto_error=False)
api_password_header = APIKeyHeader(name="api_password", auto_error=False)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["content-disposition", "estimated-content-length"],
)


async def verify_api_key(api_key: str = Security(api_password_query), api_key_alt: str = Security(api_password_header)):
    """
    Verifies the API key for the request.

    Raises:
        HTTPException: If an API password is configured and neither key matches it.
    """
    if not settings.api_password:
        return

    if api_key == settings.api_password or api_key_alt == settings.api_password:
        return

    raise HTTPException(status_code=403, detail="Could not validate credentials")


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


app.include_router(api_router, tags=["api"], dependencies=[Depends(verify_api_key)])
# tunnel tokens are already bound to the client and expire on their own
app.include_router(tunnel_router, tags=["tunnel"])


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8888, log_level="info")


if __name__ == "__main__":
    run()
