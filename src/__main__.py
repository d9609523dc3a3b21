"""Run the gateway with uvicorn: ``python -m src``.

The config path comes from GEMGATE_CONFIG, the bind address from
GEMGATE_HOST / GEMGATE_PORT or ``proxy_settings.server``.
"""

from __future__ import annotations

import argparse

import uvicorn

from .main import SERVER_HOST, SERVER_PORT


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the Gemini OpenAI gateway")
    parser.add_argument("--reload", action="store_true", help="Reload on source changes")
    args = parser.parse_args()

    uvicorn.run("src.main:app", host=SERVER_HOST, port=SERVER_PORT, reload=args.reload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
