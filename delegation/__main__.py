"""Run the orchestrator with uvicorn: ``python -m delegation``."""

import uvicorn

from delegation.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "delegation.main:create_app",
        factory=True,
        host=settings.callback_host,
        port=settings.callback_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
