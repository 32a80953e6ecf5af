from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from newsdesk.cache import cache
from newsdesk.config import settings
from newsdesk.middleware import TimingMiddleware
from newsdesk.routers import admin, articles, taxonomy


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: an unreachable store only degrades reads to the database.
    await cache.connect()
    yield
    # Shutdown
    await cache.disconnect()


app = FastAPI(
    title="Newsdesk API",
    description="News portal read/write core with a tag-invalidated cache",
    version="1.0.0",
    lifespan=lifespan,
)

# Middleware
app.add_middleware(TimingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(articles.router)
app.include_router(taxonomy.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    return {"status": "healthy", "version": "1.0.0", "env": settings.APP_ENV}
