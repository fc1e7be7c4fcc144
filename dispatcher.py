"""
Self-triggering over raw HTTP.

A job runs as a new inbound request against this same application. The
request is written by hand onto a socket so the monitor leg can be fired
without waiting for its response.
"""

import logging
import socket
import ssl
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from urllib.parse import quote, urlencode, urlsplit

from starlette.requests import Request
from starlette.routing import NoMatchFound

from config import Settings
from schemas import JobRequest
from utils import CHECK_PARAM, JOB_ID_PARAM, MONITOR_PARAM, check_token

logger = logging.getLogger(__name__)

CRLF = "\r\n"


class DispatchError(Exception):
    """The self-call could not be delivered."""


@dataclass
class RequestOrigin:
    """Where and as whom the triggering request arrived."""
    host: str
    port: int
    secure: bool = False
    cookies: dict[str, str] = field(default_factory=dict)
    authorization: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestOrigin":
        secure = request.url.scheme == "https"
        # The Host header may omit the port; the socket the server listens on does not
        server = request.scope.get("server")
        port = server[1] if server and server[1] else request.url.port
        return cls(
            host=request.url.hostname or "localhost",
            port=port or (443 if secure else 80),
            secure=secure,
            cookies=dict(request.cookies),
            authorization=request.headers.get("authorization"),
        )

    def connect_port(self) -> int:
        # Behind a TLS-terminating proxy the app may believe it is on port 80
        if self.secure and self.port == 80:
            return 443
        return self.port

    def host_header(self) -> str:
        port = self.connect_port()
        if port == (443 if self.secure else 80):
            return self.host
        return f"{self.host}:{port}"


def build_raw_request(
    method: str,
    uri: str,
    host: str,
    user_agent: str,
    cookies: Optional[dict[str, str]] = None,
    authorization: Optional[str] = None,
    body: str = "",
) -> bytes:
    lines = [
        f"{method} {uri} HTTP/1.1",
        f"Host: {host}",
        f"User-Agent: {user_agent}",
        "Cache-Control: no-store, no-cache, must-revalidate",
        "Cache-Control: post-check=0, pre-check=0",
        "Pragma: no-cache",
    ]
    if cookies:
        lines.append("Cookie: " + "; ".join(
            f"{quote(k)}={quote(v)}" for k, v in cookies.items()
        ))
    if authorization:
        lines.append(f"Authorization: {authorization}")
    if body:
        lines.append("Content-Type: application/x-www-form-urlencoded")
        lines.append(f"Content-Length: {len(body.encode())}")
    lines.append("Connection: Close")
    return (CRLF.join(lines) + CRLF + CRLF + body).encode()


class Dispatcher:
    def __init__(self, settings: Settings, url_for: Callable[[str], str]):
        """
        url_for: resolves a route name to its URL path through the host
            application (``app.url_path_for``).
        """
        self.settings = settings
        self.url_for = url_for

    def build_uri(self, route: str, params: dict) -> str:
        try:
            target = str(self.url_for(route))
        except NoMatchFound as e:
            raise DispatchError(f"Unknown route: {route}") from e
        # Keep only the path component, whatever the host hands back
        path = urlsplit(target).path or "/"
        if not path.startswith("/"):
            path = "/" + path
        query = urlencode(params, doseq=True)
        return f"{path}?{query}" if query else path

    def trigger_params(self, request: JobRequest, job_id: int, monitor: bool) -> dict:
        params = dict(request.params)
        params[JOB_ID_PARAM] = job_id
        if monitor:
            params[MONITOR_PARAM] = job_id
        params[CHECK_PARAM] = check_token(job_id, self.settings.secret_key)
        return params

    def _connect(self, origin: RequestOrigin) -> socket.socket:
        port = origin.connect_port()
        try:
            sock = socket.create_connection(
                (origin.host, port), timeout=self.settings.connect_timeout
            )
        except OSError as e:
            raise DispatchError(f"Error {e.errno or 0}: {e.strerror or e}") from e

        if origin.secure:
            context = ssl.create_default_context()
            if not self.settings.verify_tls:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            try:
                sock = context.wrap_socket(sock, server_hostname=origin.host)
            except OSError as e:
                sock.close()
                raise DispatchError(f"Error {e.errno or 0}: {e.strerror or e}") from e

        # Only connecting is time-boxed; the worker leg may run for a long time
        sock.settimeout(None)
        return sock

    def dispatch(
        self,
        request: JobRequest,
        job_id: int,
        origin: RequestOrigin,
        *,
        monitor: bool,
        asynchronous: bool,
        as_current_user: bool = True,
    ) -> bytes:
        """
        Send the job request to this application.

        Asynchronous calls return ``b""`` as soon as the request is written;
        synchronous calls return the raw response. Raises DispatchError when
        the connection cannot be made.
        """
        uri = self.build_uri(request.route, self.trigger_params(request, job_id, monitor))
        method = request.method.upper()
        body = urlencode(request.data, doseq=True) if request.data else ""
        raw = build_raw_request(
            method,
            uri,
            origin.host_header(),
            self.settings.user_agent,
            cookies=origin.cookies if as_current_user else None,
            authorization=origin.authorization if as_current_user else None,
            body=body,
        )

        leg = "monitor" if monitor else "worker"
        logger.info(f"🚀 Dispatching {leg} leg for job {job_id}: {method} {uri}")
        logger.debug(f"Running background request: {raw!r}")

        sock = self._connect(origin)
        try:
            sock.sendall(raw)
            if asynchronous:
                # Some servers drop the request if the client hangs up at once
                time.sleep(self.settings.linger_seconds)
                return b""
            chunks = []
            while True:
                chunk = sock.recv(8192)
                if not chunk:
                    break
                chunks.append(chunk)
            return b"".join(chunks)
        except OSError as e:
            raise DispatchError(f"Error {e.errno or 0}: {e.strerror or e}") from e
        finally:
            sock.close()
