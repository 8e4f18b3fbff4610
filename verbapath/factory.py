"""Application factory for creating FastAPI instances."""

from datetime import datetime
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import text

from .config import AppConfig, get_config, validate_config
from .core.logging import setup_logging, get_logger
from .core.assessment_sink import AssessmentSink, build_assessment_sink
from .core.completion_client import CompletionClient, build_completion_client
from .core.executor import ExecutorConfig
from .runners import NodeRunnerRegistry, create_default_registry
from .storage.database import init_database, create_tables, get_db
from .storage.assessment_store import AssessmentStore
from .storage.run_store import RunStore
from .api.endpoints import router, init_dependencies, get_sessions


class ApplicationState:
    """Container for application state and components."""
    
    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.registry: Optional[NodeRunnerRegistry] = None
        self.completion_client: Optional[CompletionClient] = None
        self.assessment_sink: Optional[AssessmentSink] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def setup_health_checks(registry: NodeRunnerRegistry, completion_client: CompletionClient, logger) -> None:
    """Register the component checks reported by ``/health/detailed``."""
    from .core.error_recovery import health_checker
    
    health_checker.clear()
    
    def check_database():
        db = next(get_db())
        try:
            db.execute(text("SELECT 1"))
        except Exception as e:
            raise Exception(f"Database connection failed: {str(e)}")
        finally:
            db.close()
        return {"status": "healthy", "message": "Database connection successful"}
    
    def check_runner_registry():
        return {
            "status": "healthy",
            "message": "Node runner registry operational",
            "registered_node_types": len(registry)
        }
    
    def check_completion_backend():
        return {
            "status": "healthy",
            "message": "Completion backend configured" if completion_client.is_configured
            else "No completion backend; fallback content in use",
            "configured": completion_client.is_configured
        }
    
    def check_sessions():
        return {
            "status": "healthy",
            "message": "Session registry operational",
            "active_runs": len(get_sessions())
        }
    
    health_checker.register_check("database", check_database, timeout=5.0)
    health_checker.register_check("runner_registry", check_runner_registry, timeout=2.0)
    health_checker.register_check("completion_backend", check_completion_backend, timeout=2.0)
    health_checker.register_check("sessions", check_sessions, timeout=2.0)
    
    logger.info("Health checks registered")


def initialize_database(config: AppConfig, logger) -> None:
    """Bind the engine and create tables."""
    try:
        init_database(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        create_tables()
        logger.info("Database tables created")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def initialize_core_components(config: AppConfig, logger) -> tuple:
    """Build the registry, completion client and assessment sink and hand them to the API."""
    registry = create_default_registry()
    completion_client = build_completion_client(config)
    assessment_sink = build_assessment_sink(config)
    
    init_dependencies(
        registry=registry,
        completion_client=completion_client,
        assessment_sink=assessment_sink,
        executor_config=ExecutorConfig.from_app_config(config),
        run_store=RunStore(),
        assessment_store=AssessmentStore(),
    )
    
    logger.info(
        f"Core components initialized: {len(registry)} node types, "
        f"completion backend {'configured' if completion_client.is_configured else 'not configured'}, "
        f"assessment sink {type(assessment_sink).__name__}"
    )
    return registry, completion_client, assessment_sink


def create_lifespan_handler(config: AppConfig):
    """Create application lifespan handler."""
    
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")
        
        initialize_database(config, logger)
        registry, completion_client, assessment_sink = initialize_core_components(config, logger)
        setup_health_checks(registry, completion_client, logger)
        
        app_state.config = config
        app_state.registry = registry
        app_state.completion_client = completion_client
        app_state.assessment_sink = assessment_sink
        app_state.logger = logger
        
        logger.info("Application startup completed successfully")
        
        yield
        
        logger.info(f"Shutting down {config.app_name}")
        for execution_id in get_sessions().active_ids():
            executor = get_sessions().get(execution_id)
            if executor is not None:
                executor.cancel()
                logger.info(f"Cancelled active run {execution_id}")
    
    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    
    if config is None:
        config = get_config()
    
    validate_config(config)
    
    app = FastAPI(
        title=config.app_name,
        description="Adaptive learning pathway engine for English language learners",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )
    
    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )
    
    if config.enable_request_logging:
        from .core.middleware import ErrorHandlingMiddleware, RequestLoggingMiddleware
        
        app.add_middleware(ErrorHandlingMiddleware)
        app.add_middleware(RequestLoggingMiddleware, slow_request_threshold=config.slow_request_threshold)
    
    app.include_router(router)
    add_health_endpoints(app, config)
    
    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")
    
    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}
    
    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": service_name,
            "version": config.app_version
        }
    
    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        from .core.error_recovery import health_checker
        
        try:
            results = await health_checker.run_all_checks()
        except Exception as e:
            get_logger(__name__).error(f"Health check failed: {str(e)}")
            return JSONResponse(
                status_code=503,
                content={
                    "service": service_name,
                    "overall_status": "unhealthy",
                    "error": str(e),
                    "timestamp": datetime.utcnow().isoformat()
                }
            )
        
        status_code = 200 if results["overall_status"] == "healthy" else 503
        return JSONResponse(
            status_code=status_code,
            content={
                "service": service_name,
                "version": config.app_version,
                **results
            }
        )
