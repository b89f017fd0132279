#!/usr/bin/env python3
"""Prometheus exporter for HashiCorp Vault health.

Every scrape of the metrics path performs one ``GET /v1/sys/health`` against
the configured Vault server and republishes the answer as a handful of
gauges. Nothing is cached between scrapes.
"""
import argparse
import html
import logging
import math
import os
import platform
import ssl
import sys
from dataclasses import dataclass, fields
from socket import AF_INET6
from socketserver import ThreadingMixIn
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

import requests
import urllib3
import yaml
from requests.adapters import HTTPAdapter
from prometheus_client import (
    CollectorRegistry,
    Gauge,
    PlatformCollector,
    ProcessCollector,
)
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.exposition import choose_encoder

__version__ = "0.1.0"

LOGGER_NAME = "vault_exporter"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVELS = {
    "silent": logging.CRITICAL + 10,
    "error": logging.ERROR,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

NAMESPACE = "vault"
DEFAULT_LISTEN_ADDRESS = ":9410"
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_VAULT_ADDR = "https://127.0.0.1:8200"
DEFAULT_TIMEOUT = 60.0

HEALTH_PATH = "/v1/sys/health"
# Map every non-active node state onto a 2xx so the body is always returned.
HEALTH_PARAMS = {
    "uninitcode": "299",
    "sealedcode": "299",
    "standbycode": "299",
    "drsecondarycode": "299",
    "performancestandbycode": "299",
}


class VaultExporterError(Exception):
    """Base class for errors raised by the exporter."""


class ConfigError(VaultExporterError):
    """Invalid configuration detected at startup."""


class HealthFetchError(VaultExporterError):
    """The health endpoint could not be queried or answered garbage."""


def _truthy(v: Any) -> bool:
    if v is True:
        return True
    if v is False or v is None:
        return False
    s = str(v).strip().lower()
    return s in ("1", "true", "yes", "on")


# --- Build info ---

def build_info() -> Dict[str, str]:
    return {
        "version": __version__,
        "revision": os.environ.get("VAULT_EXPORTER_REVISION", "unknown"),
        "branch": os.environ.get("VAULT_EXPORTER_BRANCH", "unknown"),
        "pythonversion": platform.python_version(),
    }


def version_text() -> str:
    info = build_info()
    return (
        f"vault_exporter, version {info['version']} "
        f"(branch: {info['branch']}, revision: {info['revision']})\n"
        f"  python version:   {info['pythonversion']}\n"
        f"  platform:         {sys.platform}/{platform.machine()}"
    )


# --- Configuration ---

@dataclass(frozen=True)
class ExporterConfig:
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    metrics_path: str = DEFAULT_METRICS_PATH
    vault_addr: str = DEFAULT_VAULT_ADDR
    tls_cacert: Optional[str] = None
    tls_client_cert: Optional[str] = None
    tls_client_key: Optional[str] = None
    insecure_ssl: bool = False
    timeout: float = DEFAULT_TIMEOUT
    log_level: str = "error"


_CONFIG_KEYS = frozenset(f.name for f in fields(ExporterConfig))


def _parse_timeout(v: Any) -> float:
    # VAULT_CLIENT_TIMEOUT may be given as a duration like "30s"
    s = str(v).strip()
    if s.endswith("s"):
        s = s[:-1]
    try:
        t = float(s)
    except ValueError:
        raise ConfigError(f"invalid timeout: {v!r}") from None
    if not math.isfinite(t) or t <= 0:
        raise ConfigError(f"timeout must be a positive finite number, got {v!r}")
    return t


def _env_defaults(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    out: Dict[str, Any] = {}
    mapping = {
        "VAULT_ADDR": "vault_addr",
        "VAULT_CACERT": "tls_cacert",
        "VAULT_CLIENT_CERT": "tls_client_cert",
        "VAULT_CLIENT_KEY": "tls_client_key",
        "VAULT_SKIP_VERIFY": "insecure_ssl",
        "VAULT_CLIENT_TIMEOUT": "timeout",
    }
    for var, key in mapping.items():
        v = env.get(var)
        if v:
            out[key] = v
    return out


def _load_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    unknown = sorted(set(cfg) - _CONFIG_KEYS)
    if unknown:
        raise ConfigError(f"unknown keys in config file {path}: {', '.join(unknown)}")
    return cfg


def _arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="vault_exporter",
        description="Export HashiCorp Vault health as Prometheus metrics.",
        argument_default=argparse.SUPPRESS,
    )
    p.add_argument("--web.listen-address", dest="listen_address",
                   help=f"Address to listen on for web interface and telemetry (default {DEFAULT_LISTEN_ADDRESS}).")
    p.add_argument("--web.telemetry-path", dest="metrics_path",
                   help=f"Path under which to expose metrics (default {DEFAULT_METRICS_PATH}).")
    p.add_argument("--vault-addr", dest="vault_addr",
                   help=f"Vault server address (default $VAULT_ADDR or {DEFAULT_VAULT_ADDR}).")
    p.add_argument("--vault-tls-cacert", dest="tls_cacert",
                   help="The path to a PEM-encoded CA cert file to use to verify the Vault server SSL certificate.")
    p.add_argument("--vault-tls-client-cert", dest="tls_client_cert",
                   help="The path to the certificate for Vault communication.")
    p.add_argument("--vault-tls-client-key", dest="tls_client_key",
                   help="The path to the private key for Vault communication.")
    p.add_argument("--insecure-ssl", dest="insecure_ssl", action="store_true",
                   help="Set SSL to ignore certificate validation.")
    p.add_argument("--vault-timeout", dest="timeout",
                   help=f"Timeout in seconds for requests to Vault (default {DEFAULT_TIMEOUT:g}).")
    p.add_argument("--log.level", dest="log_level", choices=sorted(LOG_LEVELS),
                   help="Only log messages with the given severity or above (default error).")
    p.add_argument("--config.file", dest="config_file",
                   help="Optional YAML file with exporter settings.")
    return p


def load_config(argv: Sequence[str], environ: Optional[Dict[str, str]] = None) -> ExporterConfig:
    """Merge settings: CLI flags over config file over environment over defaults."""
    args = vars(_arg_parser().parse_args(list(argv)))
    env = os.environ if environ is None else environ

    values: Dict[str, Any] = _env_defaults(env)
    config_file = args.pop("config_file", None) or env.get("VAULT_EXPORTER_CONFIG")
    if config_file:
        values.update(_load_config_file(config_file))
    values.update(args)

    values["insecure_ssl"] = _truthy(values.get("insecure_ssl", False))
    values["timeout"] = _parse_timeout(values.get("timeout", DEFAULT_TIMEOUT))

    level = str(values.get("log_level", "error")).lower()
    if level not in LOG_LEVELS:
        raise ConfigError(f"invalid log level: {level!r}")
    values["log_level"] = level

    metrics_path = str(values.get("metrics_path", DEFAULT_METRICS_PATH))
    if not metrics_path.startswith("/"):
        raise ConfigError(f"metrics path must start with '/': {metrics_path!r}")
    values["metrics_path"] = metrics_path

    parse_listen_address(str(values.get("listen_address", DEFAULT_LISTEN_ADDRESS)))
    return ExporterConfig(**values)


def parse_listen_address(addr: str) -> Tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit() or int(port) > 65535:
        raise ConfigError(f"invalid listen address: {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def setup_logging(level: str) -> logging.Logger:
    logging.basicConfig(format=LOG_FORMAT)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(LOG_LEVELS[level])
    return logger


# --- Vault health client ---

@dataclass(frozen=True)
class HealthSnapshot:
    initialized: bool
    sealed: bool
    standby: bool
    version: str
    cluster_name: str
    cluster_id: str

    @classmethod
    def from_response(cls, body: Dict[str, Any]) -> "HealthSnapshot":
        return cls(
            initialized=bool(body.get("initialized", False)),
            sealed=bool(body.get("sealed", False)),
            standby=bool(body.get("standby", False)),
            version=str(body.get("version") or ""),
            cluster_name=str(body.get("cluster_name") or ""),
            cluster_id=str(body.get("cluster_id") or ""),
        )


def _requests_session() -> requests.Session:
    s = requests.Session()
    # a failed scrape is retried by the next scrape, never here
    s.mount("https://", HTTPAdapter(max_retries=0))
    s.mount("http://", HTTPAdapter(max_retries=0))
    return s


def _check_tls_files(ca_cert: Optional[str], client_cert: Optional[str], client_key: Optional[str]) -> None:
    if bool(client_cert) != bool(client_key):
        raise ConfigError("both client cert and client key must be provided")
    try:
        ctx = ssl.create_default_context()
        if ca_cert:
            ctx.load_verify_locations(cafile=ca_cert)
        if client_cert:
            ctx.load_cert_chain(client_cert, client_key)
    except OSError as e:
        raise ConfigError(f"error loading TLS material: {e}") from e


class VaultHealthClient:
    def __init__(
        self,
        vault_addr: str = DEFAULT_VAULT_ADDR,
        ca_cert: Optional[str] = None,
        client_cert: Optional[str] = None,
        client_key: Optional[str] = None,
        insecure: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        logger: Optional[logging.Logger] = None,
        session: Optional[requests.Session] = None,
    ):
        _check_tls_files(ca_cert, client_cert, client_key)
        self.vault_addr = vault_addr.rstrip("/")
        self.timeout = timeout
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        # shared by scrape threads; Vault sets no cookies so the session holds no per-request state
        self.http = session or _requests_session()

        if insecure:
            self.verify: Any = False
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        else:
            self.verify = ca_cert or True
        self.cert: Optional[Tuple[str, str]] = (client_cert, client_key) if client_cert else None

    @classmethod
    def from_config(cls, config: ExporterConfig, logger: Optional[logging.Logger] = None) -> "VaultHealthClient":
        return cls(
            vault_addr=config.vault_addr,
            ca_cert=config.tls_cacert,
            client_cert=config.tls_client_cert,
            client_key=config.tls_client_key,
            insecure=config.insecure_ssl,
            timeout=config.timeout,
            logger=logger,
        )

    def fetch_health(self) -> HealthSnapshot:
        url = f"{self.vault_addr}{HEALTH_PATH}"
        self.logger.debug("GET %s", url)
        try:
            resp = self.http.get(
                url,
                params=HEALTH_PARAMS,
                timeout=self.timeout,
                verify=self.verify,
                cert=self.cert,
            )
        except requests.RequestException as e:
            raise HealthFetchError(f"GET {url} failed: {e}") from e

        if resp.status_code >= 400:
            raise HealthFetchError(f"GET {url} failed: {resp.status_code} {resp.text[:200]}")

        try:
            body = resp.json()
        except ValueError as e:
            raise HealthFetchError(f"GET {url} returned invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise HealthFetchError(f"GET {url} returned {type(body).__name__}, expected an object")

        return HealthSnapshot.from_response(body)


# --- Metrics ---

@dataclass(frozen=True)
class MetricDescriptor:
    name: str
    documentation: str
    labels: Tuple[str, ...] = ()

    def family(self, value: Optional[float] = None) -> GaugeMetricFamily:
        if self.labels:
            return GaugeMetricFamily(self.name, self.documentation, labels=list(self.labels))
        return GaugeMetricFamily(self.name, self.documentation, value=value)


UP = MetricDescriptor(f"{NAMESPACE}_up", "Was the last query of Vault successful.")
INITIALIZED = MetricDescriptor(f"{NAMESPACE}_initialized", "Is the Vault initialised (according to this node).")
SEALED = MetricDescriptor(f"{NAMESPACE}_sealed", "Is the Vault node sealed.")
STANDBY = MetricDescriptor(f"{NAMESPACE}_standby", "Is this Vault node in standby.")
INFO = MetricDescriptor(
    f"{NAMESPACE}_info",
    "Version of this Vault node.",
    ("version", "cluster_name", "cluster_id"),
)

METRIC_DESCRIPTORS: Tuple[MetricDescriptor, ...] = (UP, INITIALIZED, SEALED, STANDBY, INFO)


def _bool2float(b: bool) -> float:
    return 1.0 if b else 0.0


class VaultCollector:
    """Custom collector querying Vault once per ``collect()`` call."""

    def __init__(self, client: VaultHealthClient, logger: Optional[logging.Logger] = None):
        self.client = client
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def describe(self) -> Iterator[GaugeMetricFamily]:
        for desc in METRIC_DESCRIPTORS:
            yield desc.family()

    def collect(self) -> Iterator[GaugeMetricFamily]:
        try:
            health = self.client.fetch_health()
        except HealthFetchError as e:
            yield UP.family(0)
            self.logger.error("Failed to collect health from Vault server: %s", e)
            return

        yield UP.family(1)
        yield INITIALIZED.family(_bool2float(health.initialized))
        yield SEALED.family(_bool2float(health.sealed))
        yield STANDBY.family(_bool2float(health.standby))
        info = INFO.family()
        info.add_metric([health.version, health.cluster_name, health.cluster_id], 1)
        yield info


def build_registry(collector: VaultCollector) -> CollectorRegistry:
    registry = CollectorRegistry()
    registry.register(collector)

    info = build_info()
    g_build = Gauge(
        "vault_exporter_build_info",
        "A metric with a constant '1' value labeled by version, revision, branch, and pythonversion from which vault_exporter was built.",
        ["version", "revision", "branch", "pythonversion"],
        registry=registry,
    )
    g_build.labels(**info).set(1)

    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    return registry


# --- HTTP ---

def _http_response(start_response, status: str, headers: List[Tuple[str, str]], body: bytes) -> Iterable[bytes]:
    start_response(status, headers)
    return [body]


def _landing_page(metrics_path: str) -> bytes:
    info = build_info()
    build = " ".join(f"{k}={v}" for k, v in info.items())
    page = f"""<html>
<head><title>Vault Exporter</title></head>
<body>
<h1>Vault Exporter</h1>
<p><a href='{html.escape(metrics_path, quote=True)}'>Metrics</a></p>
<h2>Build</h2>
<pre>{html.escape(build)}</pre>
</body>
</html>
"""
    return page.encode("utf-8")


def make_app(registry: CollectorRegistry, metrics_path: str = DEFAULT_METRICS_PATH,
             logger: Optional[logging.Logger] = None):
    log = logger or logging.getLogger(LOGGER_NAME)
    index = _landing_page(metrics_path)

    def app(environ, start_response):
        path = environ.get("PATH_INFO", "/")

        if path == metrics_path:
            encoder, content_type = choose_encoder(environ.get("HTTP_ACCEPT"))
            try:
                output = encoder(registry)
            except Exception as e:
                log.exception("Rendering metrics failed")
                return _http_response(
                    start_response,
                    "500 Internal Server Error",
                    [("Content-Type", "text/plain; charset=utf-8")],
                    f"error rendering metrics: {e}\n".encode("utf-8"),
                )
            return _http_response(start_response, "200 OK", [("Content-Type", content_type)], output)

        if path == "/health":
            return _http_response(
                start_response,
                "200 OK",
                [("Content-Type", "text/plain; charset=utf-8")],
                b"ok\n",
            )

        return _http_response(start_response, "200 OK", [("Content-Type", "text/html; charset=utf-8")], index)

    return app


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _ThreadingWSGIServerV6(_ThreadingWSGIServer):
    address_family = AF_INET6


def _handler_class(logger: logging.Logger):
    class _LoggingHandler(WSGIRequestHandler):
        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

    return _LoggingHandler


def make_http_server(listen_address: str, app, logger: logging.Logger) -> WSGIServer:
    host, port = parse_listen_address(listen_address)
    server_class = _ThreadingWSGIServerV6 if ":" in host else _ThreadingWSGIServer
    return make_server(host, port, app, server_class=server_class, handler_class=_handler_class(logger))


def serve(listen_address: str, app, logger: Optional[logging.Logger] = None) -> None:
    log = logger or logging.getLogger(LOGGER_NAME)
    httpd = make_http_server(listen_address, app, log)
    log.info("Listening on %s", listen_address)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        log.info("Shutting down")
    finally:
        httpd.server_close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else list(argv)
    if argv and argv[0] == "version":
        print(version_text())
        return 0

    try:
        config = load_config(argv)
    except ConfigError as e:
        setup_logging("error").error("Invalid configuration: %s", e)
        return 1

    logger = setup_logging(config.log_level)
    logger.info("Starting vault_exporter %s", build_info())

    try:
        client = VaultHealthClient.from_config(config, logger=logger)
        registry = build_registry(VaultCollector(client, logger=logger))
        app = make_app(registry, config.metrics_path, logger=logger)
        serve(config.listen_address, app, logger=logger)
    except (VaultExporterError, OSError) as e:
        logger.error("Startup failed: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
