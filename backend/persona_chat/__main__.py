from __future__ import annotations

import uvicorn

from persona_chat.core.config import get_settings


def main() -> None:
    """Serve the chat backend with uvicorn using APP_HOST / APP_PORT."""

    settings = get_settings()
    uvicorn.run(
        "persona_chat.main:app",
        host=settings.app_host,
        port=settings.app_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
