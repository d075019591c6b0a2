from fastapi import APIRouter
from odata_grid.api.endpoints import datasets, relationships, metadata, diagnostics

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(datasets.router)
api_router.include_router(relationships.router)
api_router.include_router(metadata.router)
api_router.include_router(diagnostics.router)
