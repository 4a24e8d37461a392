import uvicorn

from src.api.config import load_settings
from src.api.logging_config import get_logger, setup_logging

settings = load_settings()
# Logging before the app import so module loggers pick up the config.
setup_logging(log_level=settings.log_level, log_file=settings.log_file)

from src.api.main import app  # noqa: E402

logger = get_logger(__name__)


def main() -> None:
    logger.info(f"Starting planning poker server on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
