import logging
import http.server
from datetime import datetime
from urllib.parse import urlsplit

logger = logging.getLogger("ober")
access_logger = logging.getLogger("ober.access")


def rfc3339_now():
    return datetime.now().astimezone().isoformat()


def format_log_line(timestamp, method, path, version, status, user_agent=None):
    line = f'[{timestamp}] "{method} {path} {version}" - "{status}"'
    if user_agent:
        line += f' - "{user_agent}"'
    return line


class OberRequestHandler(http.server.SimpleHTTPRequestHandler):
    """
    Library static file handler that writes one access line per request.
    File lookup, MIME types and error pages are left to SimpleHTTPRequestHandler.
    """
    def handle_one_request(self):
        self._status = None
        self.command = self.path = self.headers = None
        super().handle_one_request()
        if self._status is not None:
            self._log_access()

    def log_request(self, code='-', size='-'):
        # Called from send_response; the line is written once the handler returns.
        self._status = int(code) if isinstance(code, int) else code

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")

    def _log_access(self):
        method = self.command or "-"
        path = urlsplit(self.path).path if self.path else "-"
        version = getattr(self, "request_version", None) or "-"
        user_agent = self.headers.get("User-Agent") if self.headers is not None else None
        access_logger.info(format_log_line(rfc3339_now(), method, path, version, self._status, user_agent))


class OberHTTPServer(http.server.ThreadingHTTPServer):
    daemon_threads = True
