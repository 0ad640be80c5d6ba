from fastapi import FastAPI
import logging

from hbench.contracts import HBENCH_VERSION
from hbench.config import HbenchConfig, load_config
from .api_channel import router as channel_router
from .api_control import router as control_router
from .runtime import build_runtime

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(),
    ]
)
logger = logging.getLogger("hbench.supervisor")


def create_app(config: HbenchConfig | None = None, **supervisor_kwargs) -> FastAPI:
    config = config or load_config()
    app = FastAPI(title="hbench Sandbox Supervisor")
    app.state.runtime = build_runtime(config, **supervisor_kwargs)
    app.include_router(control_router)
    app.include_router(channel_router)

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            "Supervising agents %s with sandbox root %s",
            ", ".join(config.agents),
            config.sandbox_root,
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down agents...")
        await app.state.runtime.supervisor.stop_all()
        logger.info("Agents stopped.")

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "version": HBENCH_VERSION}

    return app


# No app is built at import time; run directly with
#   uvicorn hbench.supervisor.app:create_app --factory
