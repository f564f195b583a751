# chatrelay/http_server.py
# HTTP side of chatrelay:
# - Serves the web client (and previously uploaded images) as static files.
# - Accepts image uploads on POST /upload and returns the URL the client should embed
#   in its next chatMessage.
# Runs in a background thread next to the asyncio WebSocket gateway; it never touches the message store.

import http.server      # For the basic static file server implementation.
import json             # For JSON response bodies.
import logging          # For request and error logging.
import os               # For path handling and creating the upload directory.
import threading        # For running the HTTP server next to the event loop.
import time             # For timestamp-based upload names.
from email.parser import BytesParser   # For splitting multipart/form-data bodies.
from email.policy import HTTP as HTTP_POLICY
from functools import partial          # For binding directories into the handler class.
from socketserver import ThreadingMixIn

from . import config

UPLOAD_PATH = '/upload'
UPLOAD_FAILED = 'Image upload failed'


def parse_multipart_file(content_type, body, field_name):
    """
    Extracts one uploaded file from a multipart/form-data body.

    Args:
        content_type (str): The request's Content-Type header, including the boundary parameter.
        body (bytes): The raw request body.
        field_name (str): Form field name the file is expected under.

    Returns:
        tuple[str, bytes] | None: (original filename, file content), or None if the body is not
            multipart or has no file part with that field name.
    """
    if not content_type or not content_type.lower().startswith('multipart/form-data'):
        return None

    # The email parser needs the Content-Type header in front of the body to find the boundary.
    head = f"Content-Type: {content_type}\r\nMIME-Version: 1.0\r\n\r\n".encode('latin-1')
    message = BytesParser(policy=HTTP_POLICY).parsebytes(head + body)
    if not message.is_multipart():
        return None

    for part in message.iter_parts():
        if part.get_param('name', header='content-disposition') != field_name:
            continue
        filename = part.get_filename()
        if not filename:
            # A form field with that name but no file attached.
            continue
        return filename, part.get_payload(decode=True) or b''
    return None


def store_upload(upload_dir, original_name, content, clock=time.time):
    """
    Writes an uploaded file as <millisecond-timestamp><original-extension>.
    An existing name gets -1, -2, ... appended before the extension; files are
    created exclusively so two uploads in the same millisecond never overwrite each other.

    Returns:
        str: The stored file name (no directory).
    """
    os.makedirs(upload_dir, exist_ok=True)
    # Only the extension of the client-supplied name is used, never its directory parts.
    extension = os.path.splitext(os.path.basename(original_name.replace('\\', '/')))[1]
    stem = str(int(clock() * 1000))

    attempt = 0
    while True:
        filename = f"{stem}{extension}" if attempt == 0 else f"{stem}-{attempt}{extension}"
        try:
            with open(os.path.join(upload_dir, filename), 'xb') as f:
                f.write(content)
            return filename
        except FileExistsError:
            attempt += 1


class ChatHTTPRequestHandler(http.server.SimpleHTTPRequestHandler):
    """Static file handler with an image upload endpoint, logging through the logging module."""

    def __init__(self, *args, directory=None, upload_dir=None, **kwargs):
        # Attributes must be set before super().__init__, which handles the request immediately.
        directory = directory if directory is not None else config.STATIC_ROOT
        self.upload_dir = upload_dir if upload_dir is not None else config.UPLOAD_DIR
        super().__init__(*args, directory=directory, **kwargs)

    def log_message(self, format, *args):
        if config.DEBUG:
            logging.info("%s - %s" % (self.address_string(), format % args))

    def log_error(self, format, *args):
        logging.error("%s - %s" % (self.address_string(), format % args))

    def send_json_response(self, status, payload):
        body = json.dumps(payload).encode('utf-8')
        self.send_response(status)
        self.send_header('Content-Type', 'application/json; charset=utf-8')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self):
        try:
            length = int(self.headers.get('Content-Length') or 0)
        except ValueError:
            length = 0
        if config.MAX_UPLOAD_BYTES is not None and length > config.MAX_UPLOAD_BYTES:
            logging.warning(f"Upload from {self.address_string()} rejected: {length} bytes exceeds limit.")
            self.close_connection = True
            self.send_json_response(413, {"error": UPLOAD_FAILED})
            return
        body = self.rfile.read(length) if length > 0 else b''

        if self.path.split('?', 1)[0] != UPLOAD_PATH:
            self.send_json_response(404, {"error": "Not found"})
            return

        upload = parse_multipart_file(self.headers.get('Content-Type'), body, config.UPLOAD_FIELD)
        if upload is None:
            logging.warning(f"Upload from {self.address_string()} had no '{config.UPLOAD_FIELD}' file.")
            self.send_json_response(400, {"error": UPLOAD_FAILED})
            return

        original_name, content = upload
        filename = store_upload(self.upload_dir, original_name, content)
        logging.info(f"Stored upload '{original_name}' as {filename} ({len(content)} bytes)")
        self.send_json_response(200, {"imageUrl": f"{config.UPLOAD_URL_PREFIX}{filename}"})


class ThreadingHTTPServer(ThreadingMixIn, http.server.HTTPServer):
    """HTTPServer using threads."""
    allow_reuse_address = True
    daemon_threads = True


def start_http_server(host, port, static_root=None, upload_dir=None):
    """
    Starts the static file and upload server in a daemon thread.

    Args:
        host (str): Address to bind to.
        port (int): Port to bind to; 0 picks an ephemeral port.
        static_root (str | None): Directory served for GET requests. Defaults to config.STATIC_ROOT.
        upload_dir (str | None): Directory uploads are written to. Defaults to config.UPLOAD_DIR.

    Returns:
        ThreadingHTTPServer: The running server; call shutdown() and server_close() to stop it.
    """
    static_root = static_root if static_root is not None else config.STATIC_ROOT
    Handler = partial(ChatHTTPRequestHandler, directory=static_root, upload_dir=upload_dir)
    httpd = ThreadingHTTPServer((host, port), Handler)
    thread = threading.Thread(target=_run_http_server_loop, args=(httpd,), daemon=True)
    thread.start()
    logging.info(f"HTTP server listening on http://{host}:{httpd.server_address[1]}, serving {static_root}")
    return httpd


def _run_http_server_loop(httpd):
    """Target function for the HTTP server thread loop."""
    try:
        httpd.serve_forever()
    except Exception:
        logging.exception("Unexpected error in HTTP serve_forever loop")
    finally:
        logging.info("HTTP server loop stopped.")
