import uvicorn

from app.config import get_settings
from app.utils.logging import setup_logging


def main() -> None:
    """Run the proxy. uvicorn exits non-zero if the port can't be bound."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,  # keep the structlog handlers installed above
        proxy_headers=False,  # the admission gate needs the real peer address
    )


if __name__ == "__main__":
    main()
