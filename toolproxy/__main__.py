"""Run the proxy with uvicorn: ``python -m toolproxy``."""

import uvicorn

from toolproxy.config import load_config


def main() -> None:
    config = load_config()
    uvicorn.run("toolproxy.main:app", host=config.host, port=config.port, log_level="info")


if __name__ == "__main__":
    main()
