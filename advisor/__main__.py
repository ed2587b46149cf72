from __future__ import annotations

import logging
import sys

import uvicorn

from advisor.services.settings import settings

logger = logging.getLogger("advisor")


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if not settings.google_api_key:
        logger.error("GOOGLE_API_KEY is not set in the environment or .env file.")
        logger.error(
            "Obtain an API key from https://aistudio.google.com/app/apikey and add it to your .env file."
        )
        sys.exit(1)

    logger.info("Backend server running on http://%s:%d", settings.host, settings.port)
    uvicorn.run("advisor.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
