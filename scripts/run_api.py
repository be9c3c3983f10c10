from __future__ import annotations

import os

import uvicorn

from franchisecore.apps.api.main import create_app


def main() -> None:
    # Serve the API with env-driven host/port for compose and local runs.
    uvicorn.run(
        create_app(),
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
