import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from schemagate.core.config import settings
from schemagate.core.database import engine
from schemagate.api.router import api_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


# Close the engine once everything is done and release pooled connections
@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await engine.dispose()


app = FastAPI(title="Schemagate Pseudo API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Schemagate pseudo API: canonical commands in, safe SQL out"}
