import logging
import os
import threading
import time
import webbrowser

import uvicorn


def open_browser(url: str):
    """Open the browser after a short delay to ensure server is running."""
    time.sleep(2)
    if not webbrowser.open(url):
        logging.getLogger(__name__).info("Open %s in your browser", url)


def main():
    host = os.environ.get("ZENITH_HOST", "127.0.0.1")
    port = int(os.environ.get("ZENITH_PORT", "8123"))
    log_level = os.environ.get("ZENITH_LOG_LEVEL", "INFO").upper()

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Imported late so the server module sees the configured logging
    from server import app

    if os.environ.get("ZENITH_OPEN_BROWSER", "0") == "1":
        threading.Thread(target=open_browser, args=(f"http://{host}:{port}/docs",), daemon=True).start()

    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())


if __name__ == "__main__":
    main()
