from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    level = os.getenv("CALBRIDGE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("CALBRIDGE_HOST", "0.0.0.0")
    port = int(os.getenv("CALBRIDGE_PORT", "8080"))
    uvicorn.run("calbridge.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
