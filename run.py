"""Convenience runner for the billing lifecycle API."""

import uvicorn

from apps.api.settings import settings


def main():
    # The scheduler lives in the app process: keep a single worker.
    uvicorn.run(
        "apps.api.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.APP_RELOAD,
        reload_dirs=["apps"] if settings.APP_RELOAD else None,
    )


if __name__ == "__main__":
    main()
