from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Query

from odata_grid.core import schemas
from odata_grid.core.service import Engine, get_engine

router = APIRouter(prefix="/diagnostics", tags=["Diagnostics"])

engine_dep = Annotated[Engine, Depends(get_engine)]


@router.get("/history", response_model=List[schemas.ErrorDiagnosis])
async def get_error_history(engine: engine_dep, limit: Optional[int] = Query(None, ge=1)):
    """Most recent diagnoses, oldest first."""
    return engine.classifier.history(limit)


@router.delete("/history")
async def clear_error_history(engine: engine_dep):
    engine.classifier.clear_history()
    return {"message": "Error history cleared"}
