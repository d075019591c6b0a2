from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from odata_grid.core import schemas
from odata_grid.core.errors import InvalidEntityNameError
from odata_grid.core.service import Engine, get_engine
from odata_grid.core.discovery import pipeline
from odata_grid.core.discovery.query_builder import optimize_query, validate_query

router = APIRouter(prefix="/datasets", tags=["Datasets"])

engine_dep = Annotated[Engine, Depends(get_engine)]


@router.post("/build")
async def build_dataset_query(request: schemas.DatasetRequest, engine: engine_dep):
    """Build, validate and optimize the query for a dataset request without running it."""
    try:
        descriptor = await engine.builder.build(request)
    except InvalidEntityNameError as e:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(e))

    return {
        "descriptor": descriptor,
        "validation": validate_query(descriptor),
        "optimized": optimize_query(descriptor),
    }


@router.post("/refresh")
async def refresh_dataset(request: schemas.DatasetRequest, engine: engine_dep):
    """
    Run the full pipeline for one dataset:
    build -> validate -> optimize -> execute -> convert (or diagnose).
    """
    return await pipeline.run_dataset_pipeline(request, engine)


@router.post("/refresh-batch")
async def refresh_datasets(payload: schemas.BatchDatasetRequest, engine: engine_dep):
    """Refresh several datasets with bounded concurrency; results keep request order."""
    return await pipeline.run_batch_pipeline(
        payload.requests, engine, max_concurrency=payload.max_concurrency
    )
