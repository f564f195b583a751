# chatrelay/main.py
# Main entry point for starting chatrelay.
# Sets up logging, starts the HTTP server (static files + uploads) in a background thread,
# then runs the WebSocket chat gateway on the asyncio event loop until interrupted.

import asyncio  # Runs the WebSocket gateway's event loop.
import logging  # Standard logging for server events and errors.

from . import config
from . import server
from .http_server import start_http_server


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    logging.info("Starting chatrelay...")
    logging.info(f"Using HOST={config.HOST}, HTTP_PORT={config.HTTP_PORT}, WS_PORT={config.WS_PORT}")

    httpd = None
    try:
        httpd = start_http_server(config.HOST, config.HTTP_PORT)
        logging.info(f"Server running on http://localhost:{config.HTTP_PORT}")
        asyncio.run(server.start_server(config.HOST, config.WS_PORT))
    except KeyboardInterrupt:
        logging.info("Server stopped manually via KeyboardInterrupt.")
    except Exception:
        # Port already in use and similar startup failures end up here.
        logging.exception("Server failed to start or crashed")
        raise SystemExit(1)
    finally:
        if httpd is not None:
            httpd.shutdown()
            httpd.server_close()


if __name__ == "__main__":
    main()
