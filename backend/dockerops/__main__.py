"""Run the API with uvicorn: ``python -m dockerops``."""

import uvicorn

from dockerops.config import settings


def main() -> None:
    uvicorn.run(
        "dockerops.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
