"""Command line interface: run the server, manage the database, run a workflow file."""

import sys
import json
import argparse
import asyncio

from pydantic import ValidationError

from .config import (
    AppConfig,
    LogLevel,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="VerbaPath Engine - adaptive learning pathways for English language learners"
    )

    # Server configuration
    parser.add_argument("--host", help="Host to bind the server to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to bind the server to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument("--max-concurrent-nodes", type=int, help="Maximum nodes dispatched per wave")
    parser.add_argument("--node-timeout", type=float, help="Per-node timeout in seconds")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the API server")
    run_parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1)"
    )

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    execute_parser = subparsers.add_parser("execute", help="Run a workflow file for a student file")
    execute_parser.add_argument("workflow", help="Path to a workflow JSON file")
    execute_parser.add_argument("student", help="Path to a student profile JSON file")
    execute_parser.add_argument(
        "--input",
        action="append",
        default=[],
        help="JSON object used to resume a paused run; repeat once per pause"
    )

    health_parser = subparsers.add_parser("health", help="Run health checks")
    health_parser.add_argument("--detailed", action="store_true", help="Run detailed health checks")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.reload:
        config.reload = args.reload
    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = LogLevel(args.log_level)
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = args.debug
    if args.max_concurrent_nodes:
        config.max_concurrent_nodes = args.max_concurrent_nodes
    if args.node_timeout:
        config.node_timeout = args.node_timeout

    return config


def run_server(config: AppConfig, workers: int = 1):
    """Run the API server."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server with {workers} worker(s)")

    uvicorn_config = config.get_uvicorn_config()

    if workers > 1:
        uvicorn.run(
            "verbapath.factory:create_app",
            factory=True,
            workers=workers,
            **uvicorn_config
        )
    else:
        app = create_app(config)
        uvicorn.run(app, **uvicorn_config)


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import init_database, create_tables, drop_tables

    logger = get_logger(__name__)
    init_database(config.database_url, echo=config.database_echo,
                  connect_args=config.get_database_connect_args())

    if command == "init":
        logger.info("Initializing database tables...")
        create_tables()
        logger.info("Database tables created successfully")

    elif command == "reset":
        logger.info("Resetting database...")
        drop_tables()
        create_tables()
        logger.info("Database reset completed successfully")


async def run_workflow_file(config: AppConfig, workflow_path: str, student_path: str, inputs: list) -> int:
    """Run a workflow from disk, resuming with each ``--input`` in turn, and print the report."""
    from .core.assessment_sink import InMemoryAssessmentSink
    from .core.completion_client import build_completion_client
    from .core.executor import ExecutorCallbacks, ExecutorConfig, WorkflowExecutor
    from .models.core import ExecutionStatusEnum, StudentProfile, WorkflowGraph

    with open(workflow_path) as f:
        workflow = WorkflowGraph.model_validate(json.load(f))
    with open(student_path) as f:
        student = StudentProfile.model_validate(json.load(f))

    callbacks = ExecutorCallbacks(
        on_node_start=lambda node_id, node: print(f"> {node_id} ({node.type})"),
        on_progress=lambda percent, total, done: print(f"  {percent}% ({done}/{total})"),
    )
    executor = WorkflowExecutor(
        config=ExecutorConfig.from_app_config(config),
        callbacks=callbacks,
        completion_client=build_completion_client(config),
        assessment_sink=InMemoryAssessmentSink(),
    )

    execution = await executor.execute(workflow, student)
    pending_inputs = [json.loads(raw) for raw in inputs]
    while execution.status == ExecutionStatusEnum.PAUSED and pending_inputs:
        print(f"  paused at {execution.current_node_id}; resuming")
        execution = await executor.resume(pending_inputs.pop(0))

    print(json.dumps(execution.model_dump(mode="json", by_alias=True), indent=2))
    return 0 if execution.status != ExecutionStatusEnum.FAILED else 1


async def run_health_check(config: AppConfig, detailed: bool = False):
    """Run health checks."""
    from .core.error_recovery import health_checker
    from .factory import initialize_database, initialize_core_components, setup_health_checks

    logger = get_logger(__name__)

    if detailed:
        logger.info("Running detailed health checks...")
        initialize_database(config, logger)
        registry, completion_client, _ = initialize_core_components(config, logger)
        setup_health_checks(registry, completion_client, logger)
        results = await health_checker.run_all_checks()

        print(f"Overall Status: {results['overall_status']}")
        print(f"Timestamp: {results['timestamp']}")

        for check_name, result in results.get('checks', {}).items():
            status = result.get('status', 'unknown')
            message = result.get('message', 'No message')
            print(f"  {check_name}: {status} - {message}")

        if results['overall_status'] != 'healthy':
            sys.exit(1)
    else:
        print(f"Service: {config.app_name}")
        print("Status: Running")
        print(f"Version: {config.app_version}")


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Max Concurrent Nodes: {config.max_concurrent_nodes}")
    print(f"  Node Timeout: {config.node_timeout}s")
    print(f"  Completion Backend: {config.ai_base_url if config.ai_configured else 'not configured'}")
    print(f"  Assessment Sink: {config.assessment_sink.value}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main():
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        config = load_configuration(args)
        setup_logging(level=config.log_level.value, log_file=config.log_file,
                      structured=config.log_structured)

        if args.command == "config" and args.config_command == "validate":
            validate_configuration_command(config)
            return

        validate_config(config)

        if args.command == "run" or args.command is None:
            run_server(config, getattr(args, 'workers', 1))

        elif args.command == "db":
            if args.db_command:
                run_database_command(args.db_command, config)
            else:
                print("Database command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "execute":
            sys.exit(asyncio.run(run_workflow_file(config, args.workflow, args.student, args.input)))

        elif args.command == "health":
            asyncio.run(run_health_check(config, args.detailed))

        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
        else:
            parser.print_help()

    except (ValueError, ValidationError, OSError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
