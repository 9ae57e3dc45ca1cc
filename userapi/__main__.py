from __future__ import annotations

import argparse

import uvicorn

from userapi.config import get_settings


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Users backend with request instrumentation")
    parser.add_argument("--host", default=settings.host, help="Interface to bind")
    parser.add_argument("--port", type=int, default=settings.port, help="Port to listen on")
    args = parser.parse_args()

    uvicorn.run("userapi.main:app", host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
