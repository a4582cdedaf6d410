from fastapi import APIRouter
from schemagate.api.endpoints import commands, runs, schema

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(schema.router)
api_router.include_router(commands.router)
api_router.include_router(runs.router)
