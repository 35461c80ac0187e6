from __future__ import annotations

import logging
import sys

import uvicorn
from pydantic import ValidationError

from mongokeeper.config import get_settings


def main() -> None:
    try:
        settings = get_settings()
    except ValidationError as exc:
        logging.basicConfig(level=logging.INFO)
        logging.getLogger("mongokeeper").error("Invalid configuration: %s", exc)
        sys.exit(1)
    uvicorn.run("mongokeeper.main:app", host="0.0.0.0", port=settings.web_ui_port)


if __name__ == "__main__":
    main()
