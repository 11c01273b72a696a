from __future__ import annotations

import uvicorn

from remindrelay.apps.api.main import create_app
from remindrelay.core.config import get_settings


def main() -> None:
    # Serve the delivery API; in inline mode this process also runs the job loops.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
