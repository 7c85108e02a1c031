"""
HTTP and HTTPS servers for the one-time-pad site.

The HTTPS listener serves the application shell. The HTTP listener only
redirects to it. When both ports are equal the server runs a single plain
listener and leaves TLS to whatever terminates it in front of the process.
"""
import argparse
import gzip
import html
import io
import logging
import mimetypes
import os
import queue
import shutil
import signal
import ssl
import sys
import threading
import time
from dataclasses import dataclass
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Optional
from urllib.parse import urlsplit

import jinja2

import config
from logging_util import setup_logger

TEMPLATE_ROUTES = {
    "/": "main.html",
    "/serviceWorker.js": "serviceWorker.js",
    "/manifest.json": "manifest.json",
    "/favicon.svg": "favicon.svg",
    "/network_check.html": "network_check.html",
}
STATIC_ROUTES = ("/main.js", "/main.wasm")
RESOURCE_ROUTES = ("/favicon.png", "/robots.txt")

mimetypes.add_type("application/wasm", ".wasm")
mimetypes.add_type("image/svg+xml", ".svg")


class ServerError(Exception):
    """Base class for server failures."""


class InvalidConfig(ServerError):
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class ListenerError(ServerError):
    """A listener could not bind or stopped serving unexpectedly."""


class TLSLoadError(ListenerError):
    """The TLS certificate/key pair could not be loaded."""


class ShutdownTimeout(ServerError):
    pass


class ServerClosed(ServerError):
    """Posted by a listener that was stopped cleanly."""


@dataclass
class ServerConfig:
    log: Optional[logging.Logger] = None
    version: str = ""
    http_port: int = 0
    https_port: int = 0
    tls_cert_file: str = ""
    tls_key_file: str = ""
    resources_dir: str = config.RESOURCES_DIR
    static_dir: str = config.STATIC_DIR


def split_host_port(hostport: str):
    """Split "host:port" or "[host]:port" into its parts."""
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address: {hostport}")
        host, rest = hostport[1:end], hostport[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"missing port in address: {hostport}")
        port = rest[1:]
    else:
        host, sep, port = hostport.rpartition(":")
        if not sep:
            raise ValueError(f"missing port in address: {hostport}")
        if ":" in host:
            raise ValueError(f"too many colons in address: {hostport}")
    if ":" in port or "[" in port or "]" in port:
        raise ValueError(f"invalid port in address: {hostport}")
    return host, port


def has_sec_header(headers) -> bool:
    """True when any header name starts with "Sec-"."""
    return any(name.lower().startswith("sec-") for name in headers.keys())


def content_type(filename: str) -> Optional[str]:
    mime_type, _ = mimetypes.guess_type(filename)
    if mime_type is not None and mime_type.startswith("text/"):
        mime_type += "; charset=utf-8"
    return mime_type


class _HTTPServer(ThreadingHTTPServer):
    # Request threads are joined by server_close so stop waits for them.
    daemon_threads = False
    block_on_close = True
    app = None

    def finish_request(self, request, client_address):
        # TLS handshakes run here on the request thread, never in accept().
        if isinstance(request, ssl.SSLSocket):
            request.settimeout(config.TLS_HANDSHAKE_TIMEOUT)
            try:
                request.do_handshake()
            except OSError as e:
                self.app.log.debug("tls handshake with %s failed: %s", client_address[0], e)
                return
        super().finish_request(request, client_address)


class _Listener:
    """One HTTP server that binds and serves on its own thread."""

    def __init__(self, name: str, port: int, handler_class, app):
        self.name = name
        self.port = port
        self.httpd = _HTTPServer(("", port), handler_class, bind_and_activate=False)
        self.httpd.app = app
        self._lock = threading.Lock()
        self._state = "created"
        self._thread = None

    def start(self, results: queue.Queue, load_tls: Optional[Callable[[], ssl.SSLContext]] = None):
        with self._lock:
            self._state = "starting"
        self._thread = threading.Thread(
            target=lambda: results.put(self._serve(load_tls)),
            name=f"{self.name}-listener", daemon=True)
        self._thread.start()

    def _abort(self, err: ServerError) -> ServerError:
        with self._lock:
            self._state = "closed"
        self.httpd.server_close()
        return err

    def _serve(self, load_tls) -> ServerError:
        """Serve until shut down, returning the terminal error."""
        ssl_context = None
        if load_tls is not None:
            try:
                ssl_context = load_tls()
            except TLSLoadError as e:
                return self._abort(e)
        try:
            self.httpd.server_bind()
            self.httpd.server_activate()
        except OSError as e:
            return self._abort(ListenerError(f"{self.name} listener on port {self.port}: {e}"))
        if ssl_context is not None:
            self.httpd.socket = ssl_context.wrap_socket(
                self.httpd.socket, server_side=True, do_handshake_on_connect=False)
        with self._lock:
            if self._state == "closed":
                self.httpd.server_close()
                return ServerClosed(f"{self.name} server closed")
            self._state = "serving"
        try:
            self.httpd.serve_forever()
        except OSError as e:
            return ListenerError(f"{self.name} listener on port {self.port}: {e}")
        return ServerClosed(f"{self.name} server closed")

    def shutdown(self):
        with self._lock:
            previous, self._state = self._state, "closed"
        if previous == "serving":
            self.httpd.shutdown()
            self.httpd.server_close()
        elif previous == "created":
            self.httpd.server_close()

    def shutdown_async(self) -> Callable[[float], Optional[ServerError]]:
        """Begin shutting down; the returned function waits until a deadline."""
        errors = []

        def target():
            try:
                self.shutdown()
            except OSError as e:
                errors.append(ListenerError(f"shutting down {self.name} listener: {e}"))

        thread = threading.Thread(target=target, name=f"{self.name}-shutdown", daemon=True)
        thread.start()

        def wait(deadline: float) -> Optional[ServerError]:
            thread.join(max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                return ShutdownTimeout(f"{self.name} server did not stop before the deadline")
            return errors[0] if errors else None
        return wait


class _RequestHandler(BaseHTTPRequestHandler):
    server_version = "SarahOTP"
    timeout = config.REQUEST_TIMEOUT

    @property
    def app(self) -> "Server":
        return self.server.app

    def dispatch(self):
        raise NotImplementedError

    def do_GET(self):
        self.dispatch()

    do_HEAD = do_POST = do_PUT = do_PATCH = do_DELETE = do_OPTIONS = do_TRACE = do_GET

    def is_tls(self) -> bool:
        return isinstance(self.connection, ssl.SSLSocket)

    def redirect_to_https(self):
        try:
            url = self.app.https_url(self.headers.get("Host", ""), self.path)
        except ValueError as e:
            self.handle_error(f"could not redirect to https: {e}")
            return
        body = f'<a href="{html.escape(url)}">Temporary Redirect</a>.\n'.encode()
        self.send_response(HTTPStatus.TEMPORARY_REDIRECT)
        self.send_header("Location", url)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def send_plain(self, status: HTTPStatus, text: str):
        body = (text + "\n").encode()
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("X-Content-Type-Options", "nosniff")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def http_error(self, status: HTTPStatus):
        self.send_plain(status, status.phrase)

    def handle_error(self, message: str):
        """Log the error and answer with it as an internal server error."""
        self.app.log.error("server error: %s", message)
        self.send_plain(HTTPStatus.INTERNAL_SERVER_ERROR, message)

    def log_message(self, format, *args):
        self.app.log.debug("%s - %s", self.address_string(), format % args)


class RedirectHandler(_RequestHandler):
    """Handles the HTTP port: everything goes to HTTPS."""

    def dispatch(self):
        self.redirect_to_https()


class HTTPSHandler(_RequestHandler):
    """Handles the HTTPS port."""

    def dispatch(self):
        if not self.is_tls() and (not self.app.https_only() or not has_sec_header(self.headers)):
            self.redirect_to_https()
        elif self.command == "GET":
            self.handle_get()
        else:
            self.http_error(HTTPStatus.METHOD_NOT_ALLOWED)

    def handle_get(self):
        path = urlsplit(self.path).path
        if path in TEMPLATE_ROUTES:
            self.serve_template(TEMPLATE_ROUTES[path])
        elif path in STATIC_ROUTES:
            self.serve_file(self.app.config.static_dir, path)
        elif path in RESOURCE_ROUTES:
            self.serve_file(self.app.config.resources_dir, path)
        else:
            self.http_error(HTTPStatus.NOT_FOUND)

    def serve_template(self, name: str):
        try:
            rendered = self.app.render(name)
        except jinja2.TemplateError as e:
            self.handle_error(f"rendering template {name}: {e}")
            return
        body = rendered.encode()
        self.send_content(io.BytesIO(body), len(body), content_type(name))

    def serve_file(self, directory: str, path: str):
        filename = os.path.join(directory, path.lstrip("/"))
        if not os.path.isfile(filename):
            self.http_error(HTTPStatus.NOT_FOUND)
            return
        with open(filename, "rb") as f:
            self.send_content(f, os.fstat(f.fileno()).st_size, content_type(filename))

    def accepts_gzip(self) -> bool:
        return "gzip" in self.headers.get("Accept-Encoding", "")

    def send_content(self, source, length: int, mime_type: Optional[str]):
        compress = self.accepts_gzip()
        self.send_response(HTTPStatus.OK)
        if mime_type:
            self.send_header("Content-Type", mime_type)
        if compress:
            self.send_header("Content-Encoding", "gzip")
        else:
            self.send_header("Content-Length", str(length))
        self.end_headers()
        if compress:
            with gzip.GzipFile(fileobj=self.wfile, mode="wb") as gz:
                shutil.copyfileobj(source, gz)
        else:
            shutil.copyfileobj(source, self.wfile)


class Server:
    """Runs the site on an HTTP and an HTTPS listener."""

    def __init__(self, cfg: ServerConfig):
        self.config = cfg
        self.log = cfg.log
        self.data = {
            "Version": cfg.version,
            "Name": config.APP_NAME,
            "ShortName": config.APP_SHORT_NAME,
            "Description": config.APP_DESCRIPTION,
            "ThemeColor": config.APP_THEME_COLOR,
            "BackgroundColor": config.APP_BACKGROUND_COLOR,
        }
        self.templates = jinja2.Environment(
            loader=jinja2.FileSystemLoader([
                os.path.join(cfg.resources_dir, "html"),
                cfg.resources_dir,
            ]),
            autoescape=jinja2.select_autoescape(["html", "svg"]),
        )
        self._http = _Listener("http", cfg.http_port, RedirectHandler, self)
        self._https = _Listener("https", cfg.https_port, HTTPSHandler, self)

    def https_only(self) -> bool:
        return self.config.http_port == self.config.https_port

    def https_url(self, host: str, path: str) -> str:
        """The HTTPS address of a request made to host for path."""
        if ":" in host:
            host, _ = split_host_port(host)
            if ":" in host:
                host = f"[{host}]"
        if self.config.https_port != config.DEFAULT_HTTPS_PORT and not self.https_only():
            host = f"{host}:{self.config.https_port}"
        target = urlsplit(path)
        url = f"https://{host}{target.path}"
        if target.query:
            url += "?" + target.query
        return url

    def render(self, name: str) -> str:
        return self.templates.get_template(name).render(self.data)

    def _load_tls(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        try:
            context.load_cert_chain(self.config.tls_cert_file, self.config.tls_key_file or None)
        except OSError as e:
            self.log.error("problem loading tls certificate: %s", e)
            raise TLSLoadError(f"loading tls certificate: {e}") from e
        return context

    def run(self) -> queue.Queue:
        """
        Start both listeners in the background.

        Each started listener puts exactly one terminal error on the returned
        queue: ServerClosed after stop, or the error that ended it.
        """
        results = queue.Queue(maxsize=2)
        if not self.https_only():
            self.log.info("starting http server at http://127.0.0.1:%d", self.config.http_port)
            self._http.start(results)
        if self.https_only():
            self.log.info("starting http server at http://127.0.0.1:%d", self.config.https_port)
            if self.config.tls_cert_file or self.config.tls_key_file:
                self.log.warning("ignoring TLS certificate/key files since a single port was "
                                 "specified, using automated certificate management")
            self._https.start(results)
        else:
            self.log.info("starting https server at https://127.0.0.1:%d", self.config.https_port)
            self._https.start(results, self._load_tls)
        return results

    def stop(self, timeout: float = config.STOP_TIMEOUT):
        """
        Shut down both listeners, waiting for in-flight requests.

        Both share one deadline. The HTTPS error is raised before the HTTP one.
        """
        deadline = time.monotonic() + timeout
        wait_https = self._https.shutdown_async()
        wait_http = self._http.shutdown_async()
        https_err = wait_https(deadline)
        http_err = wait_http(deadline)
        if https_err is not None:
            raise https_err
        if http_err is not None:
            raise http_err
        self.log.info("server stopped successfully")


def new_server(cfg: ServerConfig) -> Server:
    if cfg.log is None:
        raise InvalidConfig("log", "missing logger")
    if cfg.http_port <= 0:
        raise InvalidConfig("http_port", f"invalid HTTP port: {cfg.http_port}")
    if cfg.https_port <= 0:
        raise InvalidConfig("https_port", f"invalid HTTPS port: {cfg.https_port}")
    if not os.path.isdir(cfg.resources_dir):
        raise InvalidConfig("resources_dir", f"resource directory not found: {cfg.resources_dir}")
    return Server(cfg)


def parse_args(argv=None, environ=None):
    """Read the server flags, falling back to environment variables."""
    environ = os.environ if environ is None else environ

    def env_int(key: str, default: int = 0) -> int:
        try:
            return int(environ.get(key, ""))
        except ValueError:
            return default

    env_vars = [config.ENV_VERSION_FILE, config.ENV_HTTP_PORT, config.ENV_HTTPS_PORT,
                config.ENV_PORT, config.ENV_TLS_CERT_FILE, config.ENV_TLS_KEY_FILE]
    parser = argparse.ArgumentParser(
        description="Runs the server",
        epilog=f"Reads environment variables when possible: [{','.join(env_vars)}]")
    parser.add_argument("--version-file",
                        default=environ.get(config.ENV_VERSION_FILE, config.DEFAULT_VERSION_FILE),
                        help="File whose first word is the version, used to bust cached files")
    parser.add_argument("--http-port", type=int, default=env_int(config.ENV_HTTP_PORT),
                        help="TCP port for http requests, all redirected to the https port")
    parser.add_argument("--https-port", type=int, default=env_int(config.ENV_HTTPS_PORT),
                        help="TCP port for https requests")
    parser.add_argument("--port", type=int, default=env_int(config.ENV_PORT),
                        help="Single port to run on; overrides both ports and disables the http listener")
    parser.add_argument("--tls-cert-file", default=environ.get(config.ENV_TLS_CERT_FILE, ""),
                        help="Path of the TLS certificate file")
    parser.add_argument("--tls-key-file", default=environ.get(config.ENV_TLS_KEY_FILE, ""),
                        help="Path of the TLS key file")
    args = parser.parse_args(argv)
    if args.port:
        args.http_port = args.port
        args.https_port = args.port
    return args


def read_version(version_file: str) -> str:
    """The first word of the version file."""
    try:
        with open(version_file, "r") as f:
            words = f.read().split()
    except OSError as e:
        raise InvalidConfig("version", f"reading version file: {e}") from e
    if not words:
        raise InvalidConfig("version", f"no words in version file {version_file}")
    return words[0]


def create_server(args, log: logging.Logger) -> Server:
    cfg = ServerConfig(
        log=log,
        version=read_version(args.version_file),
        http_port=args.http_port,
        https_port=args.https_port,
        tls_cert_file=args.tls_cert_file,
        tls_key_file=args.tls_key_file,
    )
    return new_server(cfg)


def run_server(server: Server, log: logging.Logger):
    """
    Run the server until a listener ends or SIGINT/SIGTERM arrives, then stop it.

    Returns whichever came first: the listener's terminal error or the signal.
    """
    done = queue.SimpleQueue()

    def on_signal(signum, frame):
        done.put(signal.Signals(signum))

    previous = {sig: signal.signal(sig, on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        results = server.run()
        threading.Thread(target=lambda: done.put(results.get()), daemon=True).start()
        event = done.get()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if isinstance(event, signal.Signals):
        log.info("handled %s", event.name)
    elif isinstance(event, ServerClosed):
        log.info("server shutdown triggered")
    else:
        log.error("server stopped unexpectedly: %s", event)
    try:
        server.stop()
    except ServerError as e:
        log.error("stopping server: %s", e)
    return event


def main(argv=None, environ=None) -> int:
    args = parse_args(argv, environ)
    log = setup_logger("server")
    try:
        server = create_server(args, log)
    except ServerError as e:
        log.error("creating server: %s", e)
        return 1
    run_server(server, log)
    return 0


if __name__ == '__main__':
    sys.exit(main())
