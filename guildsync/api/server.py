"""Run the API with uvicorn using settings from the environment."""

import uvicorn

from guildsync.api.app import create_app
from guildsync.models.settings import ServiceSettings


def main() -> None:
    settings = ServiceSettings.from_env()
    uvicorn.run(
        create_app(settings=settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
