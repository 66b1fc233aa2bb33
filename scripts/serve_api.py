from __future__ import annotations

import argparse

import uvicorn

from shiftcall.apps.api.main import create_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Serve the delivery API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    # Settings, database and channels all come from the environment.
    uvicorn.run(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
