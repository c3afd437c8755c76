from __future__ import annotations

import os

import uvicorn

from pushrelay.apps.api.main import create_app


def main() -> None:
    # The dispatch queue workers live inside the API process and start with its lifespan.
    host = os.getenv("PUSHRELAY_HOST", "0.0.0.0")
    port = int(os.getenv("PUSHRELAY_PORT", "3000"))
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
