import logging
import os

from fastapi import FastAPI

from loadouts.api.routes import router

app = FastAPI(title="loadouts", version="0.1.0")
app.include_router(router)
# Configure logging
logging.basicConfig(
    level=os.environ.get("LOADOUTS_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@app.get("/info")
async def info() -> dict[str, str]:
    return {"name": "loadouts", "version": "0.1.0"}
