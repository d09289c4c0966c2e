"""Main entry point for the review bot."""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass

from .config import Config, load_config
from .services.analysis_service import AnalysisService, create_chat_model
from .services.cache_service import AnalysisCache
from .services.database import DatabaseService
from .services.github_service import GitHubService
from .services.issue_persister import IssuePersister
from .services.repository_service import RepositoryService
from .services.review_service import ReviewOrchestrator
from .services.settings_service import SettingsResolver
from .services.task_runner import BackgroundTaskRunner
from .services.webhook_handler import WebhookIngestor
from .webhook_server import create_webhook_app


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


@dataclass
class Services:
    """Wired application services."""

    db: DatabaseService
    repositories: RepositoryService
    settings: SettingsResolver
    cache: AnalysisCache
    runner: BackgroundTaskRunner
    orchestrator: ReviewOrchestrator
    ingestor: WebhookIngestor

    async def close(self) -> None:
        await self.runner.close()
        await self.cache.close()
        await self.db.close()


def build_services(config: Config) -> Services:
    """Construct every service from configuration."""
    db_service = DatabaseService(config.server.database_path)
    repository_service = RepositoryService(db_service)
    settings_resolver = SettingsResolver(db_service)
    cache = AnalysisCache.from_config(config.cache)
    runner = BackgroundTaskRunner(max_concurrency=config.review.max_concurrent_reviews)

    orchestrator = ReviewOrchestrator(
        db_service=db_service,
        repository_service=repository_service,
        github_service=GitHubService.from_config(config.github),
        analysis_service=AnalysisService(create_chat_model(config.llm)),
        settings_resolver=settings_resolver,
        cache=cache,
        persister=IssuePersister(db_service),
        runner=runner,
        analysis_timeout=config.review.analysis_timeout_seconds,
        cache_ttl=config.cache.ttl_seconds,
    )
    ingestor = WebhookIngestor(
        db_service=db_service,
        repository_service=repository_service,
        orchestrator=orchestrator,
        runner=runner,
        webhook_secret=config.github.webhook_secret.get_secret_value(),
    )
    return Services(
        db=db_service,
        repositories=repository_service,
        settings=settings_resolver,
        cache=cache,
        runner=runner,
        orchestrator=orchestrator,
        ingestor=ingestor,
    )


async def run_server(args, logger, config: Config) -> int:
    """Run the webhook and API server until interrupted."""
    import uvicorn

    services = build_services(config)
    try:
        logger.info("Initializing database at %s", config.server.database_path)
        await services.db.initialize()
        await services.cache.connect()

        app = create_webhook_app(
            services.ingestor,
            services.orchestrator,
            services.settings,
            services.db,
            services.cache,
        )

        host = args.host or config.server.host
        port = args.port or config.server.port
        logger.info("Starting server on %s:%d...", host, port)

        uvicorn_config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if args.verbose else "warning",
        )
        server = uvicorn.Server(uvicorn_config)
        await server.serve()
        return 0
    finally:
        logger.info("Shutting down (%d background task(s) active)", services.runner.active)
        await services.close()


async def init_db(args, logger, config: Config) -> int:
    """Create the database schema."""
    db_service = DatabaseService(config.server.database_path)
    try:
        await db_service.initialize()
        logger.info("Database initialized at %s", db_service.database_path)
        return 0
    finally:
        await db_service.close()


async def add_repo(args, logger, config: Config) -> int:
    """Connect a repository so its webhook deliveries are reviewed."""
    db_service = DatabaseService(config.server.database_path)
    try:
        await db_service.initialize()
        repository = await RepositoryService(db_service).register(
            github_id=args.github_id,
            full_name=args.full_name,
            owner_login=args.owner,
            auto_review=not args.no_auto_review,
        )
        logger.info("Repository %s registered with id %s", repository.full_name, repository.id)
        print(repository.id)
        return 0
    finally:
        await db_service.close()


COMMANDS = {
    "serve": run_server,
    "init-db": init_db,
    "add-repo": add_repo,
}


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Automated pull request review service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve                                  # Run with default config.yaml
  %(prog)s -c myconfig.yaml serve --port 9000     # Custom config and port
  %(prog)s init-db                                # Create database tables
  %(prog)s add-repo 123456 octo/app               # Connect a repository
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run webhook and API server")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: server.host)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: server.port)")

    subparsers.add_parser("init-db", help="Create database tables")

    repo_parser = subparsers.add_parser("add-repo", help="Connect a repository")
    repo_parser.add_argument("github_id", help="GitHub repository id (repository.id in webhooks)")
    repo_parser.add_argument("full_name", help="Repository name in format owner/repo")
    repo_parser.add_argument("--owner", default=None, help="Owner login (default: owner part of full_name)")
    repo_parser.add_argument(
        "--no-auto-review",
        action="store_true",
        help="Register without reviewing on webhook events",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        logger.info("Loading configuration from %s", args.config)
        config = load_config(args.config)
        return asyncio.run(COMMANDS[args.command](args, logger, config))
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
