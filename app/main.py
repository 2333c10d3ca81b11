from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import os
import logging

from app.supabase_client import get_supabase
from app.state_credits import load_state_credit_table
from app import assessment_routes, system_routes

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="TaxScape Assessment API",
    description="R&D Tax Credit Assessment and Calculation API",
    version=system_routes.API_VERSION
)

# Default local frontends; more via CORS_ORIGINS (comma separated)
allowed_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

extra_origins = os.environ.get("CORS_ORIGINS", "")
if extra_origins:
    allowed_origins.extend([o.strip() for o in extra_origins.split(",") if o.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Log startup information."""
    port = os.environ.get("PORT", "8000")
    table = load_state_credit_table()
    logger.info(f"TaxScape Assessment API starting on port {port}")
    logger.info(f"Supabase connected: {get_supabase() is not None}")
    logger.info(f"State credit table v{table.version} loaded ({len(table.rows)} states)")


@app.get("/")
async def root():
    return {
        "name": "TaxScape Assessment API",
        "version": system_routes.API_VERSION,
        "description": "R&D Tax Credit Assessment and Calculation",
        "docs": "/docs",
        "health": "/api/system/health"
    }


# Register Routers
app.include_router(system_routes.router)
app.include_router(assessment_routes.router)
