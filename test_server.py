import datetime
import gzip
import http.client
import json
import logging
import os
import socket
import ssl
import threading
import time

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

import config
from server import (
    InvalidConfig, ListenerError, ServerClosed, ServerConfig, ServerError, ShutdownTimeout,
    TLSLoadError, content_type, has_sec_header, new_server, run_server, split_host_port,
)

LOG = logging.getLogger("test-server")
SEC_HEADERS = {"Sec-Fetch-Mode": "navigate"}


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def request(port, method="GET", path="/", headers=None, timeout=5.0, context=None):
    """Send one request, retrying until the listener accepts connections."""
    deadline = time.monotonic() + timeout
    while True:
        if context is not None:
            conn = http.client.HTTPSConnection("127.0.0.1", port, timeout=timeout, context=context)
        else:
            conn = http.client.HTTPConnection("127.0.0.1", port, timeout=timeout)
        try:
            conn.request(method, path, headers=headers or {})
            response = conn.getresponse()
            return response.status, response.headers, response.read()
        except ConnectionRefusedError:
            if time.monotonic() > deadline:
                raise
            time.sleep(0.05)
        finally:
            conn.close()


@pytest.fixture
def make_server():
    servers = []

    def make(**kwargs):
        kwargs.setdefault("log", LOG)
        server = new_server(ServerConfig(**kwargs))
        servers.append(server)
        return server

    yield make
    for server in servers:
        try:
            server.stop()
        except ServerError:
            pass


@pytest.fixture
def single_port_server(make_server):
    port = free_port()
    server = make_server(version="v7", http_port=port, https_port=port)
    results = server.run()
    return port, server, results


@pytest.fixture(scope="module")
def tls_files(tmp_path_factory):
    """A self-signed certificate and its key, written as PEM files."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (x509.CertificateBuilder()
            .subject_name(name).issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + datetime.timedelta(days=1))
            .sign(key, hashes.SHA256()))
    directory = tmp_path_factory.mktemp("tls")
    cert_file, key_file = directory / "cert.pem", directory / "key.pem"
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(key.private_bytes(serialization.Encoding.PEM,
                                           serialization.PrivateFormat.TraditionalOpenSSL,
                                           serialization.NoEncryption()))
    return str(cert_file), str(key_file)


@pytest.fixture
def client_context():
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


@pytest.fixture
def tls_server(make_server, tls_files):
    cert_file, key_file = tls_files
    http_port, https_port = free_port(), free_port()
    server = make_server(version="v7", http_port=http_port, https_port=https_port,
                         tls_cert_file=cert_file, tls_key_file=key_file)
    results = server.run()
    return https_port, server, results


@pytest.mark.parametrize("kwargs, field", [
    ({"log": None, "http_port": 80, "https_port": 443}, "log"),
    ({"http_port": 80}, "https_port"),
    ({"https_port": 443}, "http_port"),
    ({"http_port": -1, "https_port": 443}, "http_port"),
])
def test_new_server_invalid(make_server, kwargs, field):
    with pytest.raises(InvalidConfig) as exc_info:
        make_server(**kwargs)
    assert exc_info.value.field == field


def test_new_server_missing_resources(make_server, tmp_path):
    with pytest.raises(InvalidConfig) as exc_info:
        make_server(http_port=80, https_port=443, resources_dir=str(tmp_path / "missing"))
    assert exc_info.value.field == "resources_dir"


def test_default_directories_exist():
    assert os.path.isfile(os.path.join(config.STATIC_DIR, "main.js"))
    assert os.path.isfile(os.path.join(config.RESOURCES_DIR, "html", "main.html"))


def test_new_server_local(make_server):
    server = make_server(http_port=80, https_port=443)
    assert server.log is LOG
    assert not server.https_only()


def test_new_server_single_port(make_server):
    server = make_server(http_port=8001, https_port=8001)
    assert server.https_only()


@pytest.mark.parametrize("header, want", [
    ("Accept", False),
    ("DNT", False),
    ("", False),
    ("inSec-t", False),
    ("Sec-Fetch-Mode", True),
    ("sec-fetch-site", True),
])
def test_has_sec_header(header, want):
    assert has_sec_header({header: ""}) == want


@pytest.mark.parametrize("hostport, want", [
    ("example.com:8000", ("example.com", "8000")),
    ("example.com:", ("example.com", "")),
    ("[::1]:8000", ("::1", "8000")),
])
def test_split_host_port(hostport, want):
    assert split_host_port(hostport) == want


@pytest.mark.parametrize("hostport", ["example.com", "example.com:8000:::", "[::1]", "[::1:8000"])
def test_split_host_port_invalid(hostport):
    with pytest.raises(ValueError):
        split_host_port(hostport)


@pytest.mark.parametrize("path, host, http_port, https_port, want", [
    ("/", "example.com", 80, 443, "https://example.com/"),
    ("/", "example.com", 80, 8001, "https://example.com:8001/"),
    ("/", "example.com:8000", 8000, 8001, "https://example.com:8001/"),
    ("/network_check.html", "example.com:8000", 8000, 443, "https://example.com/network_check.html"),
    ("/", "example.com:8001", 8001, 8001, "https://example.com/"),
    ("/?v=1", "example.com", 80, 443, "https://example.com/?v=1"),
    ("/", "[::1]:8000", 8000, 8001, "https://[::1]:8001/"),
])
def test_https_url(make_server, path, host, http_port, https_port, want):
    server = make_server(http_port=http_port, https_port=https_port)
    assert server.https_url(host, path) == want


def test_https_url_bad_host(make_server):
    server = make_server(http_port=8000, https_port=8001)
    with pytest.raises(ValueError):
        server.https_url("example.com:8000:::", "/")


@pytest.mark.parametrize("filename, want", [
    ("favicon.png", "image/png"),
    ("favicon.svg", "image/svg+xml"),
    ("main.wasm", "application/wasm"),
    ("main.html", "text/html; charset=utf-8"),
    ("/", None),
])
def test_content_type(filename, want):
    assert content_type(filename) == want


def test_serves_home_page(single_port_server):
    port, _, _ = single_port_server
    status, headers, body = request(port, headers=SEC_HEADERS)
    assert status == 200
    assert headers["Content-Type"] == "text/html; charset=utf-8"
    assert config.APP_NAME.encode() in body
    assert b"v7" in body


@pytest.mark.parametrize("path, want_type", [
    ("/serviceWorker.js", "javascript"),
    ("/network_check.html", "text/html"),
    ("/favicon.svg", "image/svg+xml"),
    ("/favicon.png", "image/png"),
    ("/robots.txt", "text/plain"),
    ("/main.js", "javascript"),
])
def test_serves_routes(single_port_server, path, want_type):
    port, _, _ = single_port_server
    status, headers, _ = request(port, path=path, headers=SEC_HEADERS)
    assert status == 200
    assert want_type in headers["Content-Type"]


def test_gzip(single_port_server):
    port, _, _ = single_port_server
    headers = dict(SEC_HEADERS, **{"Accept-Encoding": "gzip, deflate"})
    status, response_headers, body = request(port, path="/manifest.json", headers=headers)
    assert status == 200
    assert response_headers["Content-Encoding"] == "gzip"
    manifest = json.loads(gzip.decompress(body))
    assert manifest["short_name"] == config.APP_SHORT_NAME


def test_no_gzip_without_accept_encoding(single_port_server):
    port, _, _ = single_port_server
    status, headers, body = request(port, path="/robots.txt", headers=SEC_HEADERS)
    assert status == 200
    assert headers["Content-Encoding"] is None
    assert int(headers["Content-Length"]) == len(body)
    assert body.startswith(b"User-agent")


@pytest.mark.parametrize("path", ["/unknown", "/main.wasm", "/html/main.html"])
def test_not_found(single_port_server, path):
    port, _, _ = single_port_server
    status, _, body = request(port, path=path, headers=SEC_HEADERS)
    assert status == 404
    assert b"Not Found" in body


@pytest.mark.parametrize("method", ["POST", "PUT", "DELETE", "HEAD"])
def test_method_not_allowed(single_port_server, method):
    port, _, _ = single_port_server
    status, _, _ = request(port, method=method, headers=SEC_HEADERS)
    assert status == 405


def test_head_error_has_no_body(single_port_server):
    port, _, _ = single_port_server
    request(port, headers=SEC_HEADERS)
    with socket.create_connection(("127.0.0.1", port), timeout=5) as s:
        s.sendall(b"HEAD / HTTP/1.0\r\nSec-Fetch-Mode: navigate\r\n\r\n")
        response = b""
        while True:
            chunk = s.recv(4096)
            if not chunk:
                break
            response += chunk
    assert response.startswith(b"HTTP/1.0 405")
    assert response.endswith(b"\r\n\r\n")


def test_redirects_without_sec_header(single_port_server):
    port, _, _ = single_port_server
    status, headers, _ = request(port, path="/robots.txt", headers={"Host": f"example.com:{port}"})
    assert status == 307
    assert headers["Location"] == "https://example.com/robots.txt"


def test_redirect_bad_host(single_port_server, caplog):
    caplog.set_level(logging.ERROR, logger=LOG.name)
    port, _, _ = single_port_server
    status, _, body = request(port, headers={"Host": "example.com:8000:::"})
    assert status == 500
    assert b"could not redirect to https" in body
    assert "could not redirect to https" in caplog.text


def test_template_error(make_server, tmp_path, caplog):
    caplog.set_level(logging.ERROR, logger=LOG.name)
    port = free_port()
    server = make_server(http_port=port, https_port=port, resources_dir=str(tmp_path))
    server.run()
    status, _, body = request(port, headers=SEC_HEADERS)
    assert status == 500
    assert b"rendering template main.html" in body
    assert "rendering template main.html" in caplog.text


def test_stop(single_port_server, caplog):
    caplog.set_level(logging.INFO, logger=LOG.name)
    port, server, results = single_port_server
    request(port, headers=SEC_HEADERS)
    server.stop()
    assert isinstance(results.get(timeout=5), ServerClosed)
    assert results.empty()  # the http listener never ran
    assert "server stopped successfully" in caplog.text
    with pytest.raises(ConnectionRefusedError):
        socket.create_connection(("127.0.0.1", port), timeout=1)


def test_stop_without_run(make_server):
    server = make_server(http_port=free_port(), https_port=free_port())
    server.stop()


def test_stop_timeout(single_port_server):
    port, server, _ = single_port_server
    request(port, headers=SEC_HEADERS)
    listener = server._https
    real_shutdown = listener.shutdown

    def slow_shutdown():
        time.sleep(0.5)
        real_shutdown()

    listener.shutdown = slow_shutdown
    with pytest.raises(ShutdownTimeout):
        server.stop(timeout=0.1)


def test_tls_load_failure(make_server, tmp_path, caplog):
    caplog.set_level(logging.INFO, logger=LOG.name)
    http_port, https_port = free_port(), free_port()
    server = make_server(http_port=http_port, https_port=https_port,
                         tls_cert_file=str(tmp_path / "cert.pem"), tls_key_file=str(tmp_path / "key.pem"))
    results = server.run()
    assert isinstance(results.get(timeout=5), TLSLoadError)
    assert "problem loading tls certificate" in caplog.text

    # the http listener keeps redirecting
    status, headers, _ = request(http_port, method="POST", path="/x", headers={"Host": "example.com"})
    assert status == 307
    assert headers["Location"] == f"https://example.com:{https_port}/x"

    server.stop()
    assert isinstance(results.get(timeout=5), ServerClosed)


def test_single_port_ignores_tls_files(make_server, caplog):
    caplog.set_level(logging.WARNING, logger=LOG.name)
    port = free_port()
    server = make_server(http_port=port, https_port=port, tls_cert_file="cert.pem", tls_key_file="key.pem")
    results = server.run()
    status, _, _ = request(port, headers=SEC_HEADERS)
    assert status == 200
    assert results.empty()
    assert "ignoring TLS certificate/key files" in caplog.text


def test_port_in_use(make_server):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("", 0))
        blocker.listen()
        port = blocker.getsockname()[1]
        server = make_server(http_port=port, https_port=port)
        results = server.run()
        assert isinstance(results.get(timeout=5), ListenerError)


def test_run_server_listener_error(make_server, tmp_path, caplog):
    caplog.set_level(logging.INFO, logger=LOG.name)
    server = make_server(http_port=free_port(), https_port=free_port(),
                         tls_cert_file=str(tmp_path / "cert.pem"))
    event = run_server(server, LOG)
    assert isinstance(event, TLSLoadError)
    assert "server stopped unexpectedly" in caplog.text
    assert "server stopped successfully" in caplog.text


def test_run_server_stopped(make_server, caplog):
    caplog.set_level(logging.INFO, logger=LOG.name)
    port = free_port()
    server = make_server(http_port=port, https_port=port)

    def stop_when_ready():
        request(port, headers=SEC_HEADERS)
        server.stop()

    stopper = threading.Thread(target=stop_when_ready)
    stopper.start()
    event = run_server(server, LOG)
    stopper.join()
    assert isinstance(event, ServerClosed)
    assert "server shutdown triggered" in caplog.text


def test_serves_over_tls(tls_server, client_context):
    port, server, results = tls_server
    status, headers, body = request(port, context=client_context)
    assert status == 200
    assert headers["Content-Type"] == "text/html; charset=utf-8"
    assert b"v7" in body

    status, _, _ = request(port, path="/main.js", context=client_context)
    assert status == 200

    server.stop()
    assert isinstance(results.get(timeout=5), ServerClosed)
    assert isinstance(results.get(timeout=5), ServerClosed)


def test_plain_request_to_tls_port_fails(tls_server, client_context):
    port, _, _ = tls_server
    request(port, context=client_context)
    with pytest.raises((http.client.HTTPException, OSError)):
        request(port, timeout=2)


def test_idle_tls_peer_does_not_block(tls_server, client_context):
    port, server, results = tls_server
    request(port, context=client_context)
    with socket.create_connection(("127.0.0.1", port), timeout=5):
        # the idle peer never sends a ClientHello
        status, _, _ = request(port, path="/robots.txt", timeout=2, context=client_context)
        assert status == 200
        server.stop()
    assert isinstance(results.get(timeout=5), ServerClosed)
    assert isinstance(results.get(timeout=5), ServerClosed)
