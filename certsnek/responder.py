"""
Transient HTTP server answering ACME http-01 challenges.
"""

import socket
import logging
import threading
import http.server
from typing import Dict, Optional

from .errors import ResponderError

logger = logging.getLogger(__name__)

WELL_KNOWN_PREFIX = "/.well-known/acme-challenge/"

DEFAULT_PORT = 80


def challenge_path(token: str) -> str:
    """Return the well-known path the authority fetches for a token."""
    return f"{WELL_KNOWN_PREFIX}{token}"


def port_available(port: int, host: str = '') -> bool:
    """Check whether ``port`` can be bound right now."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


class _ChallengeHandler(http.server.BaseHTTPRequestHandler):
    """Serves the registered path mapping, 404 for everything else."""

    def __init__(self, *args, **kwargs):
        self.responses = kwargs.pop('responses')
        super().__init__(*args, **kwargs)

    def do_GET(self):
        path = self.path.split('?', 1)[0]
        body = self.responses.get(path)
        if body is None:
            self.send_response(404)
            self.end_headers()
            self.wfile.write(b'Not Found')
            return

        data = body.encode('utf-8')
        self.send_response(200)
        self.send_header('Content-Type', 'text/plain')
        self.send_header('Content-Length', str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):
        logger.debug("challenge responder: " + format, *args)


class ChallengeResponder:
    """
    Serves registered path/body pairs over plain HTTP from a background thread.

    Paths may be registered before or after the server starts listening.
    """

    def __init__(self, host: str = ''):
        self.host = host
        self.responses: Dict[str, str] = {}
        self._server: Optional[http.server.ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def listening(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        """The bound port, useful when listening on port 0."""
        if self._server is None:
            return None
        return self._server.server_address[1]

    def register_path(self, path: str, body: str) -> None:
        self.responses[path] = body
        logger.debug(f"Registered challenge response for {path}")

    def unregister_path(self, path: str) -> None:
        self.responses.pop(path, None)

    def listen(self, port: int = DEFAULT_PORT) -> None:
        """
        Start serving on ``port``.

        Raises:
            ResponderError: The port cannot be bound
        """
        if self._server is not None:
            logger.info("HTTP challenge server already running")
            return

        responses = self.responses

        def create_handler(*args, **kwargs):
            return _ChallengeHandler(*args, responses=responses, **kwargs)

        try:
            self._server = http.server.ThreadingHTTPServer((self.host, port), create_handler)
        except OSError as e:
            raise ResponderError(f"Could not bind HTTP challenge server to port {port}: {e}") from e

        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info(f"HTTP challenge server started on port {self.port}")

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join()
        self._server = None
        self._thread = None
        logger.info("HTTP challenge server stopped")
