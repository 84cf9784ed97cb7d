"""PlanForge API server entry point."""

import os

import uvicorn
from dotenv import load_dotenv

load_dotenv()

from planforge.core.config import get_settings  # noqa: E402
from planforge.core.logging import configure_logging, get_logger  # noqa: E402


def main() -> None:
    settings = get_settings()
    configure_logging(settings.observability.log_level, json_logs=settings.observability.json_logs)
    logger = get_logger(name="planforge.server")

    # bind 0.0.0.0 only when the API must be reachable from other machines
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", "8000"))
    reload = os.getenv("DEBUG", "false").lower() == "true"

    logger.info("planforge_server_starting", host=host, port=port, environment=settings.environment, reload=reload)
    uvicorn.run("planforge.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    main()
