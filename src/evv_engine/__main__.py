"""Entry point for running the application with uvicorn."""

import uvicorn

from evv_engine.config import settings


def main() -> None:
    """Run the application."""
    uvicorn.run(
        "evv_engine.api.app:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )


if __name__ == "__main__":
    main()
