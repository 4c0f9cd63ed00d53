"""Main entry point for running the FastAPI application."""
import uvicorn

from recordhub.config import settings

if __name__ == "__main__":
    print(f"Starting {settings.app_name} v{settings.version}")
    print(f"Environment: {settings.environment.value}")
    print(f"Database: {settings.db.url.split('@')[-1] if '@' in settings.db.url else settings.db.url}")
    print(f"Auto-reload: {'Enabled' if settings.debug else 'Disabled'}")
    print("-" * 50)

    uvicorn.run(
        "recordhub.api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["recordhub"] if settings.debug else None,
        timeout_graceful_shutdown=int(settings.shutdown_timeout_seconds),
        log_level=settings.logging.level.lower(),
    )
