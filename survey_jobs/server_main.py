"""CLI entrypoint for the HTTP API server."""

import argparse
import logging
import sys
from typing import Awaitable, Callable, Dict, Optional

import uvicorn

from survey_jobs.app import create_app
from survey_jobs.config import SurveyJobsConfig
from survey_jobs.worker_main import setup_logging


def static_tenant_resolver(api_keys: Dict[str, str]) -> Callable[[str], Awaitable[Optional[str]]]:
    """Resolve tenants from a fixed API key map."""

    async def resolve(api_key: str) -> Optional[str]:
        return api_keys.get(api_key)

    return resolve


def main():
    """Main entrypoint for the HTTP server."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Survey Jobs API Server")
    parser.add_argument("--host", default=None, help="Bind address (default: from env or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: from env or 8000)")
    parser.add_argument(
        "--with-processor",
        action="store_true",
        help="Also run the job processor inside the server process",
    )

    args = parser.parse_args()

    try:
        config = SurveyJobsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.with_processor:
        config.run_processor = True

    if not config.api_keys:
        logger.warning("SURVEY_JOBS_API_KEYS is empty, every API request will get 401")

    app = create_app(
        config,
        static_tenant_resolver(config.api_keys),
        run_processor=config.run_processor,
    )

    logger.info(f"Starting survey jobs API on {config.host}:{config.port}")
    uvicorn.run(app, host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
