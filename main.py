"""Main entry point for the check scheduler."""

import sys

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from uptime_scheduler.config import get_config
from uptime_scheduler.runtime import build_facade, build_runtime, configure_logging
from uptime_scheduler.scheduler import SchedulingFacade

config = get_config()
configure_logging(config.log_level)

logger = structlog.get_logger(__name__)

# Global facade instance
facade: SchedulingFacade = None
app = FastAPI(title="Uptime Check Scheduler", version="0.1.0")


@app.on_event("startup")
async def startup_event():
    """Start scheduling every active monitor."""
    global facade
    facade = build_facade(build_runtime(config))
    count = await facade.start_all_monitors()
    logger.info("Check scheduler started", mode=facade.mode, monitors=count)


@app.on_event("shutdown")
async def shutdown_event():
    """Drain running checks and release resources."""
    if facade:
        await facade.shutdown()
    logger.info("Check scheduler stopped")


@app.get("/")
async def root():
    """Liveness endpoint."""
    return {"status": "alive", "service": "uptime-scheduler"}


@app.get("/stats")
async def get_stats():
    """Scheduler statistics for the active mode."""
    if not facade:
        return JSONResponse(status_code=503, content={"error": "Scheduler not initialized"})
    try:
        return await facade.get_stats()
    except RedisError as e:
        logger.error("Failed to read queue stats", error=str(e))
        return JSONResponse(status_code=503, content={"error": str(e)})


@app.get("/health")
async def health():
    """Queue health: disabled, healthy or unhealthy."""
    if not facade:
        return JSONResponse(status_code=503, content={"status": "starting"})
    result = await facade.health_check()
    status_code = 503 if result["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=result)


@app.post("/monitors/{monitor_id}/start")
async def start_monitor(monitor_id: int):
    """Schedule an immediate check for one monitor."""
    if not facade:
        return JSONResponse(status_code=503, content={"error": "Scheduler not initialized"})
    started = await facade.start_monitor(monitor_id)
    if not started:
        return JSONResponse(status_code=404, content={"monitor_id": monitor_id, "started": False})
    return {"monitor_id": monitor_id, "started": True}


@app.post("/monitors/{monitor_id}/stop")
async def stop_monitor(monitor_id: int):
    """Cancel future checks for one monitor."""
    if not facade:
        return JSONResponse(status_code=503, content={"error": "Scheduler not initialized"})
    await facade.stop_monitor(monitor_id)
    return {"monitor_id": monitor_id, "stopped": True}


def main():
    """Run the API server."""
    host = "0.0.0.0"
    port = 8000
    if len(sys.argv) > 1:
        port = int(sys.argv[1])
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
