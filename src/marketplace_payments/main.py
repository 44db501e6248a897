from __future__ import annotations

import uvicorn

from .app import create_app
from .config import settings
from .logging.setup import configure_logging


def main() -> None:
    configure_logging(settings)
    uvicorn.run(create_app(settings=settings), host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
