import uvicorn

from .app import create_app
from .logging_setup import setup_logging
from .settings import Settings


def main() -> None:
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
