"""Run the bridge: ``python -m sigo_bridge``."""

from __future__ import annotations

import uvicorn

from sigo_bridge.app import configure_logging, create_app
from sigo_bridge.config import settings


def main() -> None:
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
