"""
paycore API Application Factory
"""

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .auth import router as auth_router
from .errors import register_error_handlers
from .transactions import accounts_router, transactions_router
from .. import __version__
from ..config import DEFAULT_JWT_SECRET, PaycoreConfig, ensure_secure, get_config
from ..logging_config import setup_logging
from ..service import AccountService


def create_app(
    service: Optional[AccountService] = None,
    config: Optional[PaycoreConfig] = None
) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = config or get_config()
    app = FastAPI(
        title="paycore API",
        description="Account identity, credential and ledger service",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.config = config
    app.state.service = service or AccountService.from_config(config)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    
    register_error_handlers(app)
    
    # Include routers
    app.include_router(auth_router, prefix="/auth", tags=["Auth"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    
    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "paycore_api",
            "version": __version__
        }
    
    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Configure logging and serve the API with uvicorn"""
    import uvicorn
    
    config = get_config()
    ensure_secure(config)
    logger = setup_logging(config.log_level, log_format=config.log_format,
                           log_file=config.log_file)
    if config.jwt_secret == DEFAULT_JWT_SECRET:
        logger.warning("PAYCORE_JWT_SECRET is not set; using the development secret with in-memory storage")
    
    uvicorn.run(
        create_app(),
        host=host or config.api_host,
        port=port or config.api_port
    )
