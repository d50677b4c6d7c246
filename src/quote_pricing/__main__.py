from __future__ import annotations

import argparse

from .app import create_pricing_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the quote pricing service")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--db", default=None, help="SQLite file (defaults to PRICING_DB_PATH or ./pricing.db)")
    args = parser.parse_args()

    app = create_pricing_app(args.db)
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
