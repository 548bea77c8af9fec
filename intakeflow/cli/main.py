#!/usr/bin/env python3
"""Intakeflow CLI - management utility for the intake workflow engine."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from intakeflow.exceptions.domain import FlowDefinitionError
from intakeflow.services.claim_sweep import ClaimSweepService
from intakeflow.services.rules import FlowCatalog
from intakeflow.settings import settings
from intakeflow.utils.db_manager import db_manager
from intakeflow.utils.logger import logger

EXAMPLE_FLOW = {
    "id": "example",
    "version": 1,
    "title": "Example intake",
    "service_type": "med_cert",
    "sections": [
        {
            "id": "safety",
            "title": "Quick safety check",
            "questions": [
                {
                    "id": "emergency",
                    "label": "Are you experiencing a medical emergency?",
                    "type": "boolean",
                    "flags": [
                        {
                            "id": "emergency",
                            "value": True,
                            "severity": "knockout",
                            "message": "Please seek emergency care",
                        }
                    ],
                }
            ],
        },
        {
            "id": "details",
            "title": "Details",
            "questions": [
                {"id": "reason", "label": "Why do you need a certificate?", "type": "free_text"}
            ],
        },
    ],
}


def init_project(path: str) -> None:
    """Initialize a new Intakeflow project in the specified directory."""
    project_path = Path(path).resolve()

    # Create directory structure
    directories = [
        project_path / "flows",
        project_path / "data",
    ]

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created directory: {directory}")

    settings_content = """# Intakeflow Configuration File

# Server settings
port = 8000
host = "127.0.0.1"
debug = true

# Database settings
database_driver = "sqlite"
database_name = "intakeflow"

# Storage settings
storage_path = "./data"
flows_path = "./flows"

# Review claims
claim_ttl_minutes = 30
claim_sweep_interval = 60
case_expiry_hours = 0
"""

    settings_file = project_path / "settings.toml"
    if not settings_file.exists():
        settings_file.write_text(settings_content)
        logger.info(f"Created settings file: {settings_file}")

    flow_file = project_path / "flows" / "example.json"
    if not flow_file.exists():
        flow_file.write_text(json.dumps(EXAMPLE_FLOW, indent=2))
        logger.info(f"Created example flow: {flow_file}")

    env_example = """# Environment variables (optional)
# INTAKEFLOW_DATABASE_DRIVER=postgresql+asyncpg
# INTAKEFLOW_DATABASE_HOST=localhost
# INTAKEFLOW_CLAIM_TTL_MINUTES=30
"""

    env_file = project_path / ".env.example"
    env_file.write_text(env_example)
    logger.info(f"Created .env.example: {env_file}")

    logger.info(f"Project initialized at {project_path}")


def run_server(host: str | None = None, port: int | None = None) -> None:
    """Run the Intakeflow development server."""
    import uvicorn

    host = host or settings.host or "127.0.0.1"
    port = port or settings.port or 8000

    logger.info(f"Starting Intakeflow server at http://{host}:{port}")

    uvicorn.run(
        "intakeflow.api.app:app",
        host=host,
        port=port,
        reload=settings.debug,
        log_level="info" if settings.debug else "warning",
    )


async def init_database() -> None:
    """Initialize the database with tables."""
    logger.info("Initializing database...")
    await db_manager.create_db_and_tables_async()
    await db_manager.close()
    logger.info("Database initialized successfully")


async def sweep_once() -> int:
    """Run one claim sweep against the configured database."""
    try:
        count = await ClaimSweepService().sweep_once()
    finally:
        await db_manager.close()
    logger.info(f"Sweep finished: {count} cases changed")
    return count


def validate_flows(path: str) -> bool:
    """Validate a flow definition file or every ``*.json`` file in a directory.

    Returns:
        True if every definition is valid
    """
    target = Path(path)
    files = sorted(target.glob("*.json")) if target.is_dir() else [target]
    if not files:
        logger.warning(f"No flow definitions found at {target}")
        return False

    catalog = FlowCatalog()
    valid = True
    for file in files:
        try:
            definition = FlowCatalog.parse_file(file)
            catalog.add(definition)
        except FlowDefinitionError as e:
            logger.error(str(e))
            valid = False
            continue
        questions = sum(1 for _ in definition.iter_questions())
        logger.info(
            f"{file.name}: '{definition.id}' v{definition.version} OK "
            f"({len(definition.sections)} sections, {questions} questions)"
        )
    return valid


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="intakeflow", description="Intakeflow CLI - Clinical intake workflow engine"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init command
    init_parser = subparsers.add_parser("init", help="Initialize a new Intakeflow project")
    init_parser.add_argument(
        "path",
        nargs="?",
        default=".",
        help="Path where to create the project (default: current directory)",
    )

    # run command
    run_parser = subparsers.add_parser("run", help="Run the development server")
    run_parser.add_argument(
        "--host", type=str, default=None, help="Host to bind to (default: 127.0.0.1)"
    )
    run_parser.add_argument(
        "--port", type=int, default=None, help="Port to bind to (default: 8000)"
    )

    # db command
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="db_command")
    db_subparsers.add_parser("init", help="Initialize database with tables")

    # sweep command
    subparsers.add_parser("sweep", help="Release stale claims and expire abandoned cases once")

    # flows command
    flows_parser = subparsers.add_parser("flows", help="Flow definition tools")
    flows_subparsers = flows_parser.add_subparsers(dest="flows_command")
    validate_parser = flows_subparsers.add_parser("validate", help="Validate flow definitions")
    validate_parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Flow file or directory (default: configured flows directory)",
    )

    args = parser.parse_args()

    if args.command == "init":
        init_project(args.path)
    elif args.command == "run":
        run_server(args.host, args.port)
    elif args.command == "db":
        if args.db_command == "init":
            asyncio.run(init_database())
        else:
            db_parser.print_help()
    elif args.command == "sweep":
        asyncio.run(sweep_once())
    elif args.command == "flows":
        if args.flows_command == "validate":
            path = args.path or str(settings.get_flows_dir())
            if not validate_flows(path):
                sys.exit(1)
        else:
            flows_parser.print_help()
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
