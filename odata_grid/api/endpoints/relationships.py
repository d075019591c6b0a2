from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from odata_grid.core import schemas
from odata_grid.core.errors import InvalidEntityNameError
from odata_grid.core.service import Engine, get_engine
from odata_grid.core.discovery import pipeline

router = APIRouter(prefix="/relationships", tags=["Relationships"])

engine_dep = Annotated[Engine, Depends(get_engine)]


@router.post("/discover")
async def discover_relationship(payload: schemas.RelationshipRequest, engine: engine_dep):
    try:
        result = await pipeline.discover_relationship(
            engine, payload.parent_entity, payload.child_entity
        )
    except InvalidEntityNameError as e:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(e))

    if result["relationship"] is None:
        raise HTTPException(
            status.HTTP_404_NOT_FOUND,
            f"No relationship found for {payload.parent_entity} -> {payload.child_entity}",
        )
    return result


@router.get("", response_model=List[schemas.DiscoveredRelationship])
async def list_relationships(engine: engine_dep, entity: Optional[str] = None):
    """Relationships discovered so far, optionally only those touching `entity`."""
    return engine.resolver.discovered(entity)


@router.get("/export")
async def export_relationships(engine: engine_dep):
    """Confident (high/medium) mappings, ready to be imported elsewhere."""
    return engine.resolver.export_mappings()


@router.post("/import")
async def import_relationships(payload: schemas.RelationshipImportRequest, engine: engine_dep):
    imported = engine.resolver.import_mappings(payload.mappings)
    return {"imported": imported}
