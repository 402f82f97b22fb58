import logging
import sys
import threading
import time
import webbrowser

import uvicorn

from settings import Settings

logger = logging.getLogger(__name__)


def open_browser(url: str):
    """Open the browser after a short delay to ensure server is running."""
    time.sleep(2)
    try:
        webbrowser.open(url)
    except webbrowser.Error as e:
        logger.warning("Could not open a browser: %s", e)


def main():
    settings = Settings.from_env()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Import after logging is configured so start-up messages show up
    from server import create_app

    app = create_app(settings)
    url = f"http://{settings.host}:{settings.port}"
    logger.info("Starting Bookshelf at %s", url)

    if settings.open_browser:
        threading.Thread(target=open_browser, args=(url,), daemon=True).start()

    uvicorn.run(app, host=settings.host, port=settings.port,
                log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
