import os

import uvicorn


def main() -> None:
    host = (os.environ.get("HOST") or "0.0.0.0").strip()
    port = int(os.environ.get("PORT", "8000"))
    # Import string so the app module, and its env checks, load in the server process.
    uvicorn.run("huddle.main:app", host=host, port=port, log_level=(os.environ.get("LOG_LEVEL") or "info").lower())


if __name__ == "__main__":
    main()
