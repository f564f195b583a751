# chatrelay/config.py
# This file centralizes configuration settings for the chatrelay servers.
# Values are fixed here on purpose: there are no environment-variable overrides and no CLI flags.

import os # Used to build file paths relative to the working directory.

# --- Network Configuration ---

# HOST: The IP address both servers listen on.
# - '0.0.0.0': Listen on all available network interfaces.
# - '127.0.0.1' or 'localhost': Listen only on the local machine.
HOST = '0.0.0.0'

# HTTP_PORT: Port of the HTTP server that serves the web client and accepts image uploads.
# This is the port users open in their browser (http://localhost:3000).
HTTP_PORT = 3000

# WS_PORT: Port of the WebSocket server carrying chat events.
# The web client must connect to ws://<host>:WS_PORT.
WS_PORT = 3001

# MAX_MESSAGE_SIZE: Largest single WebSocket frame accepted, in bytes.
# Chat events are small; image data never travels over the socket, only its URL.
MAX_MESSAGE_SIZE = 1024 * 1024

# --- Static Files & Uploads ---

# STATIC_ROOT: Directory tree served for every GET request.
# Matches the old behaviour of serving files from the process's working directory.
STATIC_ROOT = os.getcwd()

# UPLOAD_DIR: Directory uploaded images are written to. Created on the first upload.
UPLOAD_DIR = os.path.join(STATIC_ROOT, 'uploads')

# UPLOAD_URL_PREFIX: URL path prefix returned to the client for a stored upload.
UPLOAD_URL_PREFIX = '/uploads/'

# UPLOAD_FIELD: Name of the multipart form field that carries the image.
UPLOAD_FIELD = 'image'

# MAX_UPLOAD_BYTES: Optional cap on the upload request body. None means unlimited.
MAX_UPLOAD_BYTES = None

# --- Debugging Configuration ---

# DEBUG: Debug flag for server console logging.
# - True: log every inbound and outbound event, including payloads.
# - False: only connection lifecycle, startup, warnings and errors are logged.
DEBUG = False
