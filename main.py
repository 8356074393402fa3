"""Main entry point for running the FastAPI application with auto-reload."""
import uvicorn

from docvault.config import settings

if __name__ == "__main__":
    print(f"Starting {settings.app_name} v{settings.version}")
    print(f"Debug mode: {settings.debug}")
    print(f"Database: {settings.db.url.split('@')[-1] if '@' in settings.db.url else 'SQLite'}")
    print(f"Storage root: {settings.storage.public_root.resolve()}")
    print(f"PDF optimizer: {settings.optimizer.binary} (timeout {settings.optimizer.timeout_seconds:g}s)")
    print("-" * 50)

    uvicorn.run(
        "docvault.api:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        reload_dirs=["docvault"] if settings.debug else None,
        reload_includes=["*.py"] if settings.debug else None,
        log_level=settings.logging.level.lower(),
    )
