from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError

import accounts
import brands
import carts
import catalog
import connections
import gst
import orders
import salesmen
from config import configure_logging, get_settings
from database import close_client, ensure_indexes, get_db
from errors import MarketplaceError

log = structlog.get_logger()

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings)
    db = get_db()
    ensure_indexes(db)
    if settings.seed_default_categories:
        brands.seed_default_categories(db)
    log.info("app_started", database=settings.database_name)
    yield
    close_client()


# -----------------------------
# FastAPI App
# -----------------------------
app = FastAPI(title="Wholesale Marketplace API - MongoDB", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, kind=exc.kind, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
def root():
    return {"message": "Wholesale Marketplace Backend Running", "driver": "mongodb", "db": settings.database_name}


@app.get("/health")
def health(db: Database = Depends(get_db)):
    try:
        db.command("ping")
        return {"status": "ok"}
    except PyMongoError as e:
        log.error("health_check_failed", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


for router in (
    accounts.auth_router,
    accounts.wholesalers_router,
    accounts.retailers_router,
    gst.router,
    connections.router,
    catalog.router,
    brands.brands_router,
    brands.categories_router,
    carts.router,
    orders.router,
    salesmen.router,
):
    app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
