"""
Memory Graph API - Tenant-isolated knowledge graph with semantic search

Handles:
- Knowledge graph (entities, relations, observations) per tenant
- Tenant isolation (scoped transactions, row-level security on PostgreSQL)
- Semantic index (embeddings, per-class vector collections, similarity search)
"""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from config import settings
from database import SessionLocal, create_tables
from errors import MemoryGraphError
from knowledge_graph.pipeline import PipelineFactory
from knowledge_graph.scheduler import EmbeddingScheduler
from memory import routes as memory_routes

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(session_factory=None, pipeline_factory=None, auto_embed=None) -> FastAPI:
    app = FastAPI(
        title="Memory Graph API",
        version="1.0.0",
        description="Per-tenant knowledge graph with a semantic vector index",
    )

    app.state.session_factory = session_factory or SessionLocal
    app.state.pipeline_factory = pipeline_factory or PipelineFactory()
    app.state.scheduler = EmbeddingScheduler(app.state.pipeline_factory, enabled=auto_embed)

    @app.on_event("startup")
    async def startup():
        create_tables(app.state.session_factory.kw["bind"])

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.scheduler.drain()

    @app.exception_handler(MemoryGraphError)
    async def memory_error_handler(request: Request, exc: MemoryGraphError):
        if exc.status_code >= 500:
            logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(OperationalError)
    async def database_error_handler(request: Request, exc: OperationalError):
        logger.error(f"❌ Database unavailable on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"error": "upstream_unavailable", "message": "database unavailable"},
        )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(memory_routes.router)

    @app.get("/")
    def root():
        return {
            "service": "memory-graph-api",
            "version": "1.0.0",
            "description": "Per-tenant knowledge graph with semantic search",
        }

    @app.get("/health")
    def health():
        return {"status": "healthy", "service": "memory-graph-api"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
