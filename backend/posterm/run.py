"""
POS terminal core — Uvicorn launcher.

Usage:
    posterm
    posterm --port 3030
    posterm --reload
"""
import argparse
import uvicorn


def main():
    parser = argparse.ArgumentParser(description="POS terminal core server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=3030, help="Bind port (default: 3030)")
    parser.add_argument("--reload", action="store_true", help="Enable hot reload for development")
    args = parser.parse_args()

    # One worker only: the terminal connection registry lives in process memory.
    uvicorn.run(
        "posterm.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1,
        log_level="info",
    )


if __name__ == "__main__":
    main()
