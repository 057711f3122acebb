from fastapi import FastAPI, Request

import logging
import time

from db import Base, engine
from notifications import LoggingDispatcher
from routers import ALL_ROUTERS
from settings import load_settings

import orm  # noqa: F401  registers the tables on Base.metadata

app = FastAPI(title="Equipment Cabinet API")

Base.metadata.create_all(bind=engine)

# -----------------------
# Logging
# -----------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("app")

settings = load_settings()
app.state.settings = settings
app.state.dispatcher = LoggingDispatcher(settings.notifications)
if not settings.notifications.any_channel:
    logger.info("no notification channel configured; intents will only be logged at debug level")

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed_ms = int((time.time() - start) * 1000)
    logger.info(
        "method=%s path=%s status=%s elapsed_ms=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response

for router in ALL_ROUTERS:
    app.include_router(router)

@app.get("/")
def root():
    return {"message": "Equipment Cabinet API", "docs": "/docs"}
