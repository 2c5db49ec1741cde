"""Worker service entry point."""

import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(env_path)


def main():
    """Run the worker service."""
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("RELOAD", "false").lower() == "true"

    uvicorn.run(
        "ordersync_worker.server.app:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=port,
        reload=reload,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
