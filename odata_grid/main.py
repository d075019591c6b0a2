from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI

from odata_grid.api.router import api_router
from odata_grid.core.service import Engine, build_engine, get_engine
from odata_grid.core.discovery import pipeline


# Build the engine once and close its HTTP client when the app shuts down
@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.engine = build_engine()
    yield
    await app.state.engine.aclose()


app = FastAPI(title="OData Grid Discovery API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the OData Grid Discovery API"}


@app.get("/health")
async def health(engine: Annotated[Engine, Depends(get_engine)]):
    return await pipeline.get_engine_health(engine)
