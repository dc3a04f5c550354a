"""
Module runner to start the FastAPI server.

Usage:
    python -m connection_hub.run
"""
import uvicorn
from dotenv import load_dotenv

from .core.settings import get_settings


# PUBLIC_INTERFACE
def main():
    """Entry point to start the FastAPI server with environment-based configuration."""
    load_dotenv()
    settings = get_settings()
    api = settings.api

    print(f"[server] Starting Connection Hub on {api.HOST}:{api.PORT} (reload={api.RELOAD}, log_level={api.LOG_LEVEL})")
    uvicorn.run(
        "connection_hub.api.main:create_app",
        factory=True,
        host=api.HOST,
        port=api.PORT,
        reload=api.RELOAD,
        log_level=api.LOG_LEVEL,
    )


if __name__ == "__main__":
    main()
