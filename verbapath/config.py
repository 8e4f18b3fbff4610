"""Configuration management for the VerbaPath engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AssessmentSinkType(str, Enum):
    """Where comprehension results are sent."""
    SQL = "sql"
    HTTP = "http"
    NONE = "none"


class AppConfig(BaseModel):
    """Application configuration settings."""
    
    # Application settings
    app_name: str = Field(default="VerbaPath Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")
    
    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")
    
    # Database settings
    database_url: str = Field(
        default="sqlite:///./verbapath.db",
        description="Database connection URL for run reports and assessments"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")
    
    # Executor settings
    max_concurrent_nodes: int = Field(
        default=3,
        description="Maximum nodes dispatched together in one wave"
    )
    node_timeout: float = Field(
        default=30.0,
        description="Wall-clock budget for a single node handler in seconds"
    )
    enable_streaming: bool = Field(default=True, description="Relay token streams from AI nodes")
    executor_debug_mode: bool = Field(default=False, description="Log node inputs and outputs")
    
    # Completion backend settings
    ai_api_key: Optional[str] = Field(default=None, description="API key for the completion backend")
    ai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of an OpenAI-compatible completion API"
    )
    ai_default_model: str = Field(default="gpt-4o-mini", description="Model used when a node names none")
    ai_default_temperature: float = Field(default=0.3, description="Temperature used when a node names none")
    ai_request_timeout: float = Field(default=60.0, description="HTTP timeout for completion calls")
    ai_enable_image_generation: bool = Field(default=False, description="Allow image generation calls")
    ai_image_model: str = Field(default="dall-e-3", description="Image generation model")
    ai_image_quality: str = Field(default="standard", description="Image generation quality")
    
    # Assessment sink settings
    assessment_sink: AssessmentSinkType = Field(
        default=AssessmentSinkType.SQL,
        description="Assessment persistence adapter"
    )
    assessment_sink_url: Optional[str] = Field(
        default=None,
        description="Endpoint receiving assessment payloads when the HTTP sink is used"
    )
    assessment_sink_retries: int = Field(default=3, description="Attempts for HTTP assessment delivery")
    
    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    
    # Performance monitoring settings
    slow_request_threshold: float = Field(
        default=5.0,
        description="Slow request threshold in seconds"
    )
    enable_request_logging: bool = Field(
        default=True,
        description="Enable request logging and error handling middleware"
    )
    
    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    cors_methods: list = Field(
        default=["GET", "POST"],
        description="CORS allowed methods"
    )
    
    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")
        
        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].split('+')[0].lower()
        
        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")
        
        return v
    
    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v
    
    @field_validator('max_concurrent_nodes')
    @classmethod
    def validate_max_concurrent_nodes(cls, v):
        """A wave must be able to hold at least one node."""
        if v < 1:
            raise ValueError("Maximum concurrent nodes must be at least 1")
        return v
    
    @field_validator('node_timeout', 'ai_request_timeout')
    @classmethod
    def validate_timeouts(cls, v):
        """Validate timeout values."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v
    
    @field_validator('ai_default_temperature')
    @classmethod
    def validate_temperature(cls, v):
        if not 0.0 <= v <= 2.0:
            raise ValueError("Temperature must be between 0 and 2")
        return v
    
    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_url.lower().startswith("sqlite")
    
    @property
    def ai_configured(self) -> bool:
        """Whether a completion backend can be reached."""
        return bool(self.ai_api_key)
    
    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}
    
    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }
    
    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"VERBAPATH_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)
        
        return cls(
            app_name=get_env("APP_NAME", "VerbaPath Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./verbapath.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            max_concurrent_nodes=get_env("MAX_CONCURRENT_NODES", 3, int),
            node_timeout=get_env("NODE_TIMEOUT", 30.0, float),
            enable_streaming=get_env("ENABLE_STREAMING", True, bool),
            executor_debug_mode=get_env("EXECUTOR_DEBUG_MODE", False, bool),
            ai_api_key=get_env("AI_API_KEY", None),
            ai_base_url=get_env("AI_BASE_URL", "https://api.openai.com/v1"),
            ai_default_model=get_env("AI_DEFAULT_MODEL", "gpt-4o-mini"),
            ai_default_temperature=get_env("AI_DEFAULT_TEMPERATURE", 0.3, float),
            ai_request_timeout=get_env("AI_REQUEST_TIMEOUT", 60.0, float),
            ai_enable_image_generation=get_env("AI_ENABLE_IMAGE_GENERATION", False, bool),
            ai_image_model=get_env("AI_IMAGE_MODEL", "dall-e-3"),
            ai_image_quality=get_env("AI_IMAGE_QUALITY", "standard"),
            assessment_sink=AssessmentSinkType(get_env("ASSESSMENT_SINK", "sql")),
            assessment_sink_url=get_env("ASSESSMENT_SINK_URL", None),
            assessment_sink_retries=get_env("ASSESSMENT_SINK_RETRIES", 3, int),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO")),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_request_logging=get_env("ENABLE_REQUEST_LOGGING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST"], list),
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a dotenv file (if any) and the environment."""
    global _config
    
    from dotenv import load_dotenv
    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')
    
    _config = AppConfig.from_env()
    
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Validate cross-field configuration settings."""
    errors = []
    
    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")
    
    if config.assessment_sink == AssessmentSinkType.HTTP and not config.assessment_sink_url:
        errors.append("assessment_sink_url is required when assessment_sink is 'http'")
    
    if config.ai_enable_image_generation and not config.ai_api_key:
        errors.append("ai_enable_image_generation requires ai_api_key")
    
    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
        executor_debug_mode=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        log_structured=True,
        database_echo=False,
        cors_origins=[]
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        node_timeout=5.0,
        enable_request_logging=False
    )
