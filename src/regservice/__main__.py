from __future__ import annotations

import uvicorn

from regservice.api import create_app
from regservice.settings import ServiceSettings


def main() -> None:
    settings = ServiceSettings()
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
