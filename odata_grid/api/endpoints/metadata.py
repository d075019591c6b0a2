from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from odata_grid.core import schemas
from odata_grid.core.service import Engine, get_engine
from odata_grid.core.discovery.schema_cache import is_valid_entity_name

router = APIRouter(prefix="/metadata", tags=["Metadata"])

engine_dep = Annotated[Engine, Depends(get_engine)]


@router.delete("/cache")
async def clear_metadata_cache(engine: engine_dep):
    """Forget cached schemas and relationships; the next lookup refetches."""
    engine.clear_caches()
    return {"message": "Schema and relationship caches cleared"}


@router.get("/{entity}", response_model=schemas.EntitySchema)
async def get_entity_schema(entity: str, engine: engine_dep):
    if not is_valid_entity_name(entity):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, f"Invalid entity name: '{entity}'")

    schema = await engine.schema_cache.get_schema(entity)
    if schema is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"Schema not found for entity '{entity}'")
    return schema
