#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
tlsgate (single-file)

- TLS-terminating reverse proxy: one listener, one plain HTTP/1.1 upstream.
- Forwards HTTP/1.1 request/response exchanges (keep-alive, chunked, 100-continue).
- Protocol upgrade (WebSocket): after 101 the connection becomes a raw duplex tunnel.
- Headless service mode, or a TUI (urwid) with live connections and counters.

"""

from __future__ import annotations

import argparse
import asyncio
import enum
import itertools
import os
import signal
import ssl
import sys
import time
import uuid
import weakref
import warnings
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
)

import urwid
import yaml

import logging
from logging.handlers import RotatingFileHandler

HEAD_END = b"\r\n\r\n"
CRLF = b"\r\n"
GATEWAY_ERROR_REQUEST_WAIT = 5.0
MAX_LEADING_BLANK_HEADS = 4
CURRENT_CONN_ID: ContextVar[Optional[str]] = ContextVar("CURRENT_CONN_ID", default=None)

__version__ = "1.0.0"

logging.getLogger("asyncio").setLevel(logging.ERROR)

# Module logger (configured in main())
LOG = logging.getLogger("tlsgate")

# Throttled logging (single-threaded asyncio loop)
_LOG_THROTTLE_STATE: Dict[str, Tuple[float, int]] = {}
# key -> (last_ts, suppressed_count)


def log_throttled(
    level: int,
    key: str,
    msg: str,
    *args,
    interval_s: float = 2.0,
    exc_info: bool = False,
) -> None:
    """
    Log a message at most once per interval for a given key.

    Keeps a suppressed counter; when it logs again it appends:
      " (suppressed N similar messages)"
    """
    now = time.time()
    last_ts, suppressed = _LOG_THROTTLE_STATE.get(key, (0.0, 0))

    if (now - last_ts) < float(interval_s):
        _LOG_THROTTLE_STATE[key] = (last_ts, suppressed + 1)
        return

    _LOG_THROTTLE_STATE[key] = (now, 0)

    if suppressed:
        msg = f"{msg} (suppressed {suppressed} similar messages)"
    LOG.log(level, msg, *args, exc_info=exc_info)


def setup_logging(log_path: Optional[str], level: str = "INFO") -> None:
    """Configure application logging.

    Args:
        log_path: Path to the log file. None logs to stderr (service managers
            collect it from there).
        level: Logging level name (e.g. INFO, DEBUG).
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(lvl)

    # Avoid duplicate handlers (e.g. reload/tests)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler: logging.Handler
    if log_path:
        try:
            d = os.path.dirname(log_path)
            if d:
                os.makedirs(d, exist_ok=True)
            handler = RotatingFileHandler(
                log_path,
                maxBytes=10 * 1024 * 1024,   # 10 MB
                backupCount=5,
                encoding="utf-8",
            )
        except OSError as e:
            sys.stderr.write(f"[tlsgate] cannot open log file {log_path!r}: {e}; logging to stderr\n")
            handler = logging.StreamHandler(sys.stderr)
    else:
        handler = logging.StreamHandler(sys.stderr)

    handler.setLevel(lvl)
    handler.setFormatter(fmt)
    root.addHandler(handler)

    LOG.info("Logging initialized: %s level=%s", log_path or "<stderr>", logging.getLevelName(lvl))


# Errors
class ProxyError(Exception):
    pass


class ConfigurationError(ProxyError):
    """Startup cannot proceed: bad config, unreadable cert/key, bind failure."""


class HandshakeError(ProxyError):
    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class UpstreamUnavailable(ProxyError):
    def __init__(self, message: str, status: int = 502):
        super().__init__(message)
        self.status = status


class ProtocolViolation(ProxyError):
    def __init__(self, side: str, message: str):
        super().__init__(f"{side}: {message}")
        self.side = side


class PeerClosed(ProxyError):
    """Normal end of a session; not an error."""

    def __init__(self, reason: str, side: str):
        super().__init__(reason)
        self.reason = reason
        self.side = side


class ReadTimeout(ProxyError):
    def __init__(self, side: str, timeout: Optional[float]):
        super().__init__(f"{side} read timeout ({timeout}s)")
        self.side = side


# Config model
TLS_VERSIONS: Dict[str, ssl.TLSVersion] = {
    "TLS1.0": ssl.TLSVersion.TLSv1,
    "TLS1.1": ssl.TLSVersion.TLSv1_1,
    "TLS1.2": ssl.TLSVersion.TLSv1_2,
    "TLS1.3": ssl.TLSVersion.TLSv1_3,
}


@dataclass(frozen=True)
class TlsConfig:
    # Incoming TLS (client -> proxy)
    cert: str
    key: str
    min_version: str = "TLS1.2"
    max_version: str = "TLS1.3"
    ciphers: str = "HIGH:!aNULL:!MD5"
    handshake_timeout: float = 10.0


@dataclass(frozen=True)
class UpstreamConfig:
    # Outgoing plain HTTP (proxy -> upstream)
    addr: str = "node:9944"
    connect_timeout: float = 5.0


@dataclass(frozen=True)
class BufferConfig:
    # upstream -> client chunking; never changes content
    count: int = 16
    size: int = 4096
    initial_size: int = 2048


@dataclass(frozen=True)
class PolicyConfig:
    max_connections: int = 1024
    header_max: int = 64 * 1024

    # seconds
    read_timeout: float = 60.0
    idle_timeout: float = 75.0
    tunnel_idle_timeout: float = 3600.0  # 0 => no idle limit for upgraded connections


@dataclass(frozen=True)
class ProxyConfig:
    listen: str
    tls: TlsConfig
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    buffers: BufferConfig = field(default_factory=BufferConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)


def dump_example_config() -> str:
    example = {
        "listen": "0.0.0.0:443",
        "tls": {
            "cert": "/etc/tlsgate/fullchain.pem",
            "key": "/etc/tlsgate/privkey.pem",
            "min_version": "TLS1.2",
            "max_version": "TLS1.3",
            "ciphers": "HIGH:!aNULL:!MD5",
            "handshake_timeout": 10.0,
        },
        "upstream": {"addr": "node:9944", "connect_timeout": 5.0},
        "buffers": {"count": 16, "size": 4096, "initial_size": 2048},
        "policy": {
            "max_connections": 1024,
            "header_max": 65536,
            "read_timeout": 60.0,
            "idle_timeout": 75.0,
            "tunnel_idle_timeout": 3600.0,
        },
    }
    return yaml.safe_dump(example, sort_keys=False)


def _parse_hostport(addr: str) -> Tuple[str, int]:
    try:
        host, port_s = addr.rsplit(":", 1)
        port = int(port_s)
    except ValueError:
        raise ConfigurationError(f"expected host:port, got {addr!r}") from None
    if not (0 <= port <= 65535):
        raise ConfigurationError(f"port out of range in {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not host:
        raise ConfigurationError(f"empty host in {addr!r}")
    return host, port


def parse_tls_version(value: str) -> ssl.TLSVersion:
    """Map "TLS1.2" / "TLSv1.2" / "tls1_2" / "TLS1" to ssl.TLSVersion."""
    norm = str(value or "").upper().strip().replace("V", "").replace("_", ".")
    if norm == "TLS1":
        norm = "TLS1.0"
    try:
        return TLS_VERSIONS[norm]
    except KeyError:
        raise ConfigurationError(
            f"unknown TLS version {value!r} (expected one of {', '.join(TLS_VERSIONS)})"
        ) from None


def _section(raw: dict, name: str) -> dict:
    sec = raw.get(name) or {}
    if not isinstance(sec, dict):
        raise ConfigurationError(f"section {name!r} must be a mapping")
    return sec


def load_config(path: str) -> ProxyConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"cannot read config {path!r}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in {path!r}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError("config must be a mapping")

    tls_raw = _section(raw, "tls")
    up_raw = _section(raw, "upstream")
    buf_raw = _section(raw, "buffers")
    pol_raw = _section(raw, "policy")

    try:
        listen = str(raw.get("listen", "0.0.0.0:443"))
        if "cert" not in tls_raw or "key" not in tls_raw:
            raise ConfigurationError("tls.cert and tls.key are required")

        tls = TlsConfig(
            cert=str(tls_raw["cert"]),
            key=str(tls_raw["key"]),
            min_version=str(tls_raw.get("min_version", "TLS1.2")),
            max_version=str(tls_raw.get("max_version", "TLS1.3")),
            ciphers=str(tls_raw.get("ciphers", "HIGH:!aNULL:!MD5") or ""),
            handshake_timeout=float(tls_raw.get("handshake_timeout", 10.0)),
        )
        upstream = UpstreamConfig(
            addr=str(up_raw.get("addr", "node:9944")),
            connect_timeout=float(up_raw.get("connect_timeout", 5.0)),
        )
        buffers = BufferConfig(
            count=int(buf_raw.get("count", 16)),
            size=int(buf_raw.get("size", 4096)),
            initial_size=int(buf_raw.get("initial_size", 2048)),
        )
        policy = PolicyConfig(
            max_connections=int(pol_raw.get("max_connections", 1024)),
            header_max=int(pol_raw.get("header_max", 64 * 1024)),
            read_timeout=float(pol_raw.get("read_timeout", 60.0)),
            idle_timeout=float(pol_raw.get("idle_timeout", 75.0)),
            tunnel_idle_timeout=float(pol_raw.get("tunnel_idle_timeout", 3600.0)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid config value: {e}") from e

    cfg = ProxyConfig(listen=listen, tls=tls, upstream=upstream, buffers=buffers, policy=policy)
    validate_config(cfg)
    return cfg


def validate_config(cfg: ProxyConfig) -> None:
    _parse_hostport(cfg.listen)
    _parse_hostport(cfg.upstream.addr)

    lo = parse_tls_version(cfg.tls.min_version)
    hi = parse_tls_version(cfg.tls.max_version)
    if lo > hi:
        raise ConfigurationError(f"tls.min_version {cfg.tls.min_version} is above tls.max_version {cfg.tls.max_version}")

    if cfg.buffers.count < 1 or cfg.buffers.size < 1 or cfg.buffers.initial_size < 1:
        raise ConfigurationError("buffers.count, buffers.size and buffers.initial_size must be >= 1")
    if cfg.policy.max_connections < 1:
        raise ConfigurationError("policy.max_connections must be >= 1")
    if cfg.policy.header_max < 1024:
        raise ConfigurationError("policy.header_max must be >= 1024")
    for name in ("read_timeout", "idle_timeout"):
        if getattr(cfg.policy, name) <= 0:
            raise ConfigurationError(f"policy.{name} must be > 0")
    if cfg.policy.tunnel_idle_timeout < 0:
        raise ConfigurationError("policy.tunnel_idle_timeout must be >= 0")
    if cfg.tls.handshake_timeout <= 0 or cfg.upstream.connect_timeout <= 0:
        raise ConfigurationError("tls.handshake_timeout and upstream.connect_timeout must be > 0")


# TLS
@dataclass
class TlsInfo:
    sni: Optional[str] = None
    alpn: Optional[str] = None
    version: Optional[str] = None
    cipher: Optional[str] = None


def tls_info_from_sslobj(sslobj: Optional[ssl.SSLObject]) -> TlsInfo:
    if not sslobj:
        return TlsInfo()
    c = sslobj.cipher()
    return TlsInfo(
        alpn=sslobj.selected_alpn_protocol(),
        version=sslobj.version(),
        cipher=c[0] if c else None,
    )


def build_inbound_ssl_context(tls: TlsConfig) -> ssl.SSLContext:
    """
    TLS context for the client -> proxy side.

    Raises ConfigurationError when the cert/key pair cannot be loaded, the version
    range is invalid, or the cipher policy selects nothing.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)

    try:
        ctx.load_cert_chain(certfile=tls.cert, keyfile=tls.key)
    except (OSError, ssl.SSLError) as e:
        raise ConfigurationError(f"cannot load certificate/key cert={tls.cert!r} key={tls.key!r}: {e}") from e

    lo = parse_tls_version(tls.min_version)
    hi = parse_tls_version(tls.max_version)
    if lo > hi:
        raise ConfigurationError(f"tls.min_version {tls.min_version} is above tls.max_version {tls.max_version}")
    try:
        with warnings.catch_warnings():
            # the legacy floor is opt-in and reported through LOG below
            warnings.filterwarnings("ignore", message=r"ssl\.TLSVersion\.TLSv1(_1)? is deprecated",
                                    category=DeprecationWarning)
            ctx.minimum_version = lo
            ctx.maximum_version = hi
    except ValueError as e:
        raise ConfigurationError(f"TLS version range not supported by this OpenSSL: {e}") from e
    if lo < ssl.TLSVersion.TLSv1_2:
        LOG.warning("TLS-in: legacy protocol versions enabled (min_version=%s, deprecated by Python and OpenSSL); "
                    "OpenSSL may still refuse them unless ciphers include @SECLEVEL=0", tls.min_version)

    # applies to TLS <= 1.2 suites; TLS 1.3 suites are fixed by OpenSSL
    if tls.ciphers:
        try:
            ctx.set_ciphers(tls.ciphers)
        except ssl.SSLError as e:
            raise ConfigurationError(f"cipher policy {tls.ciphers!r} selects no cipher: {e}") from e

    ctx.set_alpn_protocols(["http/1.1"])
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def _one_line(s: str, limit: int = 300) -> str:
    s = (s or "").replace("\r", " ").replace("\n", " ").strip()
    if len(s) > limit:
        s = s[:limit] + "…"
    return s


def classify_tls_in_fail(e: BaseException) -> str:
    """
    Convert a server-side TLS handshake exception into a short category.

    Examples:
      - handshake_timeout
      - protocol_version
      - no_shared_cipher
      - http_request (client spoke plain HTTP to the TLS port)
      - eof / rst / tls_error
    """
    s = str(e).lower()
    if isinstance(e, asyncio.TimeoutError) or "taking longer than" in s:
        return "handshake_timeout"
    if "http request" in s:
        return "http_request"
    if "protocol version" in s or "unsupported protocol" in s or "wrong version" in s or "version too low" in s:
        return "protocol_version"
    if "no shared cipher" in s or "no_shared_cipher" in s:
        return "no_shared_cipher"
    if "handshake failure" in s or "handshake_failure" in s:
        return "handshake_failure"
    if isinstance(e, ConnectionResetError):
        return "rst"
    if "eof" in s or isinstance(e, ssl.SSLEOFError):
        return "eof"
    return "tls_error"


def classify_close_reason(exc: Optional[BaseException]) -> str:
    if exc is None:
        return "normal"
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    if isinstance(exc, ConnectionResetError):
        return "rst"
    if isinstance(exc, BrokenPipeError):
        return "broken_pipe"
    if isinstance(exc, ssl.SSLError):
        return "tls_error"
    if isinstance(exc, asyncio.IncompleteReadError):
        return "eof"
    return "error"


async def close_writer(writer: Optional[asyncio.StreamWriter], timeout: float = 2.0) -> None:
    """Close a stream and wait (bounded) for the transport to go away."""
    if writer is None:
        return
    try:
        if not writer.is_closing():
            writer.close()
        await asyncio.wait_for(writer.wait_closed(), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        LOG.debug("close_writer: close failed", exc_info=True)


# Metrics
class Metrics:
    def __init__(self):
        self._lock = asyncio.Lock()
        self._g: Dict[str, int] = {}

    async def inc(self, key: str, n: int = 1) -> None:
        async with self._lock:
            self._g[key] = self._g.get(key, 0) + n

    async def snapshot(self) -> Dict[str, int]:
        async with self._lock:
            return dict(self._g)


# Connection model + store
@dataclass
class ConnInfo:
    """
    Summary of one client connection for the Connections view.

    state follows SessionState values; close_reason/closed_by are filled when
    the connection leaves the active set.
    """
    id: str
    client_ip: str
    client_port: int
    upstream_addr: str

    opened_ts: float
    last_activity_ts: float

    closed_ts: Optional[float] = None
    close_reason: Optional[str] = None
    closed_by: Optional[str] = None  # "client" | "upstream" | "proxy"

    tls_in: TlsInfo = field(default_factory=TlsInfo)
    state: str = "tls"
    requests: int = 0
    bytes_in: int = 0    # client -> upstream
    bytes_out: int = 0   # upstream -> client
    last_path: Optional[str] = None

    last_error: Optional[str] = None
    error_count: int = 0

    def age_s(self) -> int:
        ref_ts = self.closed_ts if self.closed_ts is not None else time.time()
        return max(0, int(ref_ts - self.opened_ts))

    def idle_s(self) -> int:
        ref_ts = self.closed_ts if self.closed_ts is not None else time.time()
        return max(0, int(ref_ts - self.last_activity_ts))


class ConnectionStore:
    """
    Active connections plus a ring buffer of closed ones.

      - add(ConnInfo): register on accept
      - set_tls_in / set_state / set_last_path / add_bytes / set_error: progressive details
      - remove(conn_id, ...): finalize and move to the closed ring
      - snapshot(include_closed=...): feed the TUI modes active/all/closed
    """
    def __init__(self, closed_max: int = 2000):
        self._lock = asyncio.Lock()
        self._active: Dict[str, ConnInfo] = {}
        self._closed: Deque[ConnInfo] = deque(maxlen=int(closed_max))

    async def add(self, ci: ConnInfo) -> None:
        async with self._lock:
            self._active[ci.id] = ci

    async def remove(
            self,
            conn_id: str,
            *,
            close_reason: Optional[str] = None,
            closed_by: Optional[str] = None,
    ) -> Optional[ConnInfo]:
        async with self._lock:
            ci = self._active.pop(conn_id, None)
            if ci is None:
                return None
            if close_reason is not None:
                ci.close_reason = close_reason
            if closed_by is not None:
                ci.closed_by = closed_by
            ci.closed_ts = time.time()
            self._closed.append(ci)
            return ci

    async def set_tls_in(self, conn_id: str, tls: TlsInfo) -> None:
        async with self._lock:
            ci = self._active.get(conn_id)
            if ci:
                ci.tls_in = tls
                ci.last_activity_ts = time.time()

    async def set_state(self, conn_id: str, state: str) -> None:
        async with self._lock:
            ci = self._active.get(conn_id)
            if ci:
                ci.state = state

    async def set_last_path(self, conn_id: str, path: str) -> None:
        """Remember the last request target and count the request."""
        async with self._lock:
            ci = self._active.get(conn_id)
            if ci:
                ci.last_path = path
                ci.requests += 1
                ci.last_activity_ts = time.time()

    async def add_bytes(self, conn_id: str, *, up: int = 0, down: int = 0) -> None:
        async with self._lock:
            ci = self._active.get(conn_id)
            if ci:
                ci.bytes_in += up
                ci.bytes_out += down
                ci.last_activity_ts = time.time()

    async def set_error(self, conn_id: str, err: str) -> None:
        async with self._lock:
            ci = self._active.get(conn_id)
            if ci:
                ci.last_error = (err or "")[:500]
                ci.error_count += 1

    async def snapshot(self, *, include_closed: bool = False) -> List[ConnInfo]:
        async with self._lock:
            active = sorted(self._active.values(), key=lambda c: c.opened_ts)
            if not include_closed:
                return active
            return active + list(self._closed)


# HTTP/1.1 heads and body framing
HTTP_REASONS = {
    502: "Bad Gateway",
    504: "Gateway Timeout",
}

_TOKEN_CHARS = frozenset("!#$%&'*+-.^_`|~0123456789"
                         "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ")
_HEX_CHARS = frozenset("0123456789abcdefABCDEF")

Headers = List[Tuple[str, str]]


@dataclass
class RequestHead:
    method: str
    target: str
    version: str
    headers: Headers = field(default_factory=list)

    @property
    def start_line(self) -> str:
        return f"{self.method} {self.target} {self.version}"


@dataclass
class ResponseHead:
    version: str
    status: int
    reason: str
    headers: Headers = field(default_factory=list)


@dataclass(frozen=True)
class BodyFraming:
    kind: str  # none | length | chunked | close
    length: int = 0


NO_BODY = BodyFraming("none")


def _is_token(s: str) -> bool:
    return bool(s) and all(ch in _TOKEN_CHARS for ch in s)


def _parse_header_lines(side: str, lines: List[str]) -> Headers:
    hdrs: Headers = []
    for ln in lines:
        if not ln:
            continue
        if ln[0] in " \t":
            raise ProtocolViolation(side, "obsolete header line folding")
        name, sep, value = ln.partition(":")
        if not sep or not _is_token(name):
            raise ProtocolViolation(side, f"malformed header line {_one_line(ln, 80)!r}")
        hdrs.append((name, value.strip(" \t")))
    return hdrs


def _split_head(raw: bytes) -> List[str]:
    text = raw.decode("iso-8859-1")
    # tolerate empty lines before the start line (RFC 7230 3.5)
    text = text.lstrip("\r\n")
    return text.split("\r\n")


def parse_request_head(raw: bytes) -> RequestHead:
    lines = _split_head(raw)
    parts = lines[0].split(" ")
    if len(parts) != 3:
        raise ProtocolViolation("client", f"bad request line {_one_line(lines[0], 120)!r}")
    method, target, version = parts
    if not _is_token(method) or not target or version not in ("HTTP/1.1", "HTTP/1.0"):
        raise ProtocolViolation("client", f"bad request line {_one_line(lines[0], 120)!r}")
    return RequestHead(method, target, version, _parse_header_lines("client", lines[1:]))


def parse_response_head(raw: bytes) -> ResponseHead:
    lines = _split_head(raw)
    version, _, rest = lines[0].partition(" ")
    status_s, _, reason = rest.partition(" ")
    if version not in ("HTTP/1.1", "HTTP/1.0") or len(status_s) != 3 or not status_s.isdigit():
        raise ProtocolViolation("upstream", f"bad status line {_one_line(lines[0], 120)!r}")
    return ResponseHead(version, int(status_s), reason, _parse_header_lines("upstream", lines[1:]))


def get_header(headers: Headers, name: str) -> Optional[str]:
    nl = name.lower()
    for k, v in headers:
        if k.lower() == nl:
            return v
    return None


def get_all_headers(headers: Headers, name: str) -> List[str]:
    nl = name.lower()
    return [v for k, v in headers if k.lower() == nl]


def header_tokens(headers: Headers, name: str) -> Set[str]:
    out: Set[str] = set()
    for v in get_all_headers(headers, name):
        out.update(t.strip().lower() for t in v.split(",") if t.strip())
    return out


def rewrite_request_headers(headers: Headers, default_host: str) -> Headers:
    """
    Headers sent upstream:
      - Host: the client's value (default_host if the client sent none)
      - Connection: literally "Upgrade", whatever the client sent
      - Upgrade: passed through verbatim
    Every other header keeps its value and order.
    """
    hosts = get_all_headers(headers, "Host")
    if len(hosts) > 1:
        raise ProtocolViolation("client", "multiple Host headers")
    out: Headers = [("Host", hosts[0] if hosts else default_host)]
    for k, v in headers:
        if k.lower() in ("host", "connection"):
            continue
        out.append((k, v))
    out.append(("Connection", "Upgrade"))
    return out


def serialize_head(start_line: str, headers: Headers) -> bytes:
    out = [start_line]
    for k, v in headers:
        out.append(f"{k}: {v}")
    out.append("")
    out.append("")
    return "\r\n".join(out).encode("iso-8859-1")


def _content_length(side: str, values: List[str]) -> int:
    lengths = set()
    for v in values:
        for item in v.split(","):
            item = item.strip()
            if not item.isdigit():
                raise ProtocolViolation(side, f"invalid Content-Length {v!r}")
            lengths.add(int(item))
    if len(lengths) != 1:
        raise ProtocolViolation(side, f"conflicting Content-Length values {values!r}")
    return lengths.pop()


def _final_coding_is_chunked(te: List[str]) -> bool:
    codings = [c.strip().lower() for v in te for c in v.split(",") if c.strip()]
    return bool(codings) and codings[-1] == "chunked"


def request_body_framing(req: RequestHead) -> BodyFraming:
    te = get_all_headers(req.headers, "Transfer-Encoding")
    cl = get_all_headers(req.headers, "Content-Length")
    if te:
        if cl:
            raise ProtocolViolation("client", "both Transfer-Encoding and Content-Length")
        if not _final_coding_is_chunked(te):
            raise ProtocolViolation("client", f"unsupported Transfer-Encoding {te!r}")
        return BodyFraming("chunked")
    if cl:
        n = _content_length("client", cl)
        return BodyFraming("length", n) if n else NO_BODY
    return NO_BODY


def response_body_framing(method: str, resp: ResponseHead) -> BodyFraming:
    if method.upper() == "HEAD" or 100 <= resp.status < 200 or resp.status in (204, 304):
        return NO_BODY
    te = get_all_headers(resp.headers, "Transfer-Encoding")
    if te:
        return BodyFraming("chunked") if _final_coding_is_chunked(te) else BodyFraming("close")
    cl = get_all_headers(resp.headers, "Content-Length")
    if cl:
        n = _content_length("upstream", cl)
        return BodyFraming("length", n) if n else NO_BODY
    return BodyFraming("close")


def wants_keep_alive(version: str, headers: Headers) -> bool:
    tokens = header_tokens(headers, "Connection")
    if version == "HTTP/1.0":
        return "keep-alive" in tokens
    return "close" not in tokens


def gateway_error_response(status: int) -> bytes:
    reason = HTTP_REASONS.get(status, "Bad Gateway")
    body = (
        f"<html><head><title>{status} {reason}</title></head>"
        f"<body><h1>{status} {reason}</h1><hr>tlsgate</body></html>\r\n"
    ).encode("ascii")
    head = serialize_head(
        f"HTTP/1.1 {status} {reason}",
        [
            ("Content-Type", "text/html"),
            ("Content-Length", str(len(body))),
            ("Connection", "close"),
        ],
    )
    return head + body


def chunk_sizes(first: int, rest: int) -> Iterator[int]:
    """Read sizes for a body: one `first`-sized read, then `rest` forever."""
    return itertools.chain((first,), itertools.repeat(rest))


async def _read_some(reader: asyncio.StreamReader, n: int, timeout: Optional[float], side: str) -> bytes:
    try:
        return await asyncio.wait_for(reader.read(n), timeout=timeout)
    except asyncio.TimeoutError:
        raise ReadTimeout(side, timeout) from None


async def _read_line(reader: asyncio.StreamReader, timeout: Optional[float], side: str) -> bytes:
    try:
        return await asyncio.wait_for(reader.readuntil(CRLF), timeout=timeout)
    except asyncio.TimeoutError:
        raise ReadTimeout(side, timeout) from None
    except asyncio.IncompleteReadError:
        raise ProtocolViolation(side, "connection closed inside chunked body") from None
    except asyncio.LimitOverrunError:
        raise ProtocolViolation(side, "chunk line too long") from None


async def iter_fixed(
    reader: asyncio.StreamReader,
    length: int,
    sizes: Iterator[int],
    timeout: Optional[float],
    side: str,
) -> AsyncIterator[bytes]:
    left = length
    while left > 0:
        data = await _read_some(reader, min(next(sizes), left), timeout, side)
        if not data:
            raise ProtocolViolation(side, f"connection closed with {left} body bytes outstanding")
        left -= len(data)
        yield data


async def iter_chunked(
    reader: asyncio.StreamReader,
    sizes: Iterator[int],
    timeout: Optional[float],
    side: str,
) -> AsyncIterator[bytes]:
    """Yield a chunked body exactly as received (size lines, data, trailers)."""
    while True:
        line = await _read_line(reader, timeout, side)
        size_s = line[:-2].split(b";", 1)[0].strip().decode("iso-8859-1")
        if not size_s or len(size_s) > 16 or not all(ch in _HEX_CHARS for ch in size_s):
            raise ProtocolViolation(side, f"bad chunk size line {line[:40]!r}")
        size = int(size_s, 16)
        yield line

        if size == 0:
            # trailer section ends with an empty line
            while True:
                trailer = await _read_line(reader, timeout, side)
                yield trailer
                if trailer == CRLF:
                    return

        async for data in iter_fixed(reader, size, sizes, timeout, side):
            yield data
        try:
            tail = await asyncio.wait_for(reader.readexactly(2), timeout=timeout)
        except asyncio.TimeoutError:
            raise ReadTimeout(side, timeout) from None
        except asyncio.IncompleteReadError:
            raise ProtocolViolation(side, "connection closed inside chunked body") from None
        if tail != CRLF:
            raise ProtocolViolation(side, "chunk data not followed by CRLF")
        yield tail


async def iter_until_eof(
    reader: asyncio.StreamReader,
    sizes: Iterator[int],
    timeout: Optional[float],
    side: str,
) -> AsyncIterator[bytes]:
    while True:
        data = await _read_some(reader, next(sizes), timeout, side)
        if not data:
            return
        yield data


def body_iter(
    reader: asyncio.StreamReader,
    framing: BodyFraming,
    sizes: Iterator[int],
    timeout: Optional[float],
    side: str,
) -> AsyncIterator[bytes]:
    if framing.kind == "length":
        return iter_fixed(reader, framing.length, sizes, timeout, side)
    if framing.kind == "chunked":
        return iter_chunked(reader, sizes, timeout, side)
    if framing.kind == "close":
        return iter_until_eof(reader, sizes, timeout, side)
    raise ValueError(f"no body for framing {framing.kind!r}")


async def _tap(source: AsyncIterator[bytes], on_chunk: Callable[[bytes], Awaitable[None]]) -> AsyncIterator[bytes]:
    async for data in source:
        await on_chunk(data)
        yield data


# Buffer pool
class BufferPool:
    """
    A fixed set of `count` buffers of `size` bytes.

    acquire() suspends while every buffer is in flight, which bounds the data a
    relay can hold for a slow client to count * size bytes.
    """
    def __init__(self, count: int, size: int):
        if count < 1 or size < 1:
            raise ValueError("BufferPool needs count >= 1 and size >= 1")
        self.count = count
        self.size = size
        self._free: asyncio.Queue = asyncio.Queue()
        for _ in range(count):
            self._free.put_nowait(bytearray(size))

    @property
    def available(self) -> int:
        return self._free.qsize()

    async def acquire(self) -> bytearray:
        return await self._free.get()

    def release(self, buf: bytearray) -> None:
        if len(buf) != self.size:
            raise ValueError("buffer does not belong to this pool")
        if self._free.qsize() >= self.count:
            raise RuntimeError("BufferPool: release without acquire")
        self._free.put_nowait(buf)


async def relay_buffered(
    source: AsyncIterator[bytes],
    writer: asyncio.StreamWriter,
    pool: BufferPool,
) -> int:
    """
    Copy `source` to `writer` through the pool.

    fill() splits incoming data into pool buffers, drain() writes them out in
    order and returns each buffer. Returns the number of bytes written.
    A source error is re-raised once everything read before it has been written.
    """
    filled: asyncio.Queue = asyncio.Queue()
    written = 0

    async def fill() -> None:
        try:
            async for data in source:
                view = memoryview(data)
                while view:
                    buf = await pool.acquire()
                    n = min(len(view), pool.size)
                    buf[:n] = view[:n]
                    await filled.put((buf, n))
                    view = view[n:]
        finally:
            filled.put_nowait(None)

    async def drain() -> None:
        nonlocal written
        while True:
            item = await filled.get()
            if item is None:
                return
            buf, n = item
            try:
                writer.write(bytes(buf[:n]))
                await writer.drain()
            finally:
                pool.release(buf)
            written += n

    t_fill = asyncio.create_task(fill())
    t_drain = asyncio.create_task(drain())
    try:
        # drain ends at the sentinel fill always queues, or on a write error
        await asyncio.wait({t_drain})
    finally:
        for t in (t_fill, t_drain):
            if not t.done():
                t.cancel()
        await asyncio.gather(t_fill, t_drain, return_exceptions=True)

    for t in (t_fill, t_drain):
        if not t.cancelled() and t.exception() is not None:
            raise t.exception()
    return written


# Session state machine
class SessionState(enum.Enum):
    HANDSHAKE = "handshake"
    HTTP_STREAM = "http_stream"
    TUNNEL = "tunnel"
    CLOSED_CLEAN = "closed_clean"
    CLOSED_ERROR = "closed_error"


_TERMINAL = frozenset({SessionState.CLOSED_CLEAN, SessionState.CLOSED_ERROR})

TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.HANDSHAKE: frozenset({SessionState.HTTP_STREAM, SessionState.TUNNEL}) | _TERMINAL,
    SessionState.HTTP_STREAM: frozenset({SessionState.HANDSHAKE}) | _TERMINAL,
    SessionState.TUNNEL: _TERMINAL,
    SessionState.CLOSED_CLEAN: frozenset(),
    SessionState.CLOSED_ERROR: frozenset(),
}


class ProxiedSession:
    """
    One client connection (already past TLS) paired with one upstream connection.

    Flow:
      HANDSHAKE   read request head, rewrite Host/Connection, forward head + body,
                  wait for the response head (1xx interim responses are relayed)
      HTTP_STREAM relay the response body through the buffer pool, then back to
                  HANDSHAKE for the next keep-alive request or close
      TUNNEL      after 101: raw duplex copy until either side closes
      CLOSED_*    close_reason / closed_by tell who ended it and why

    run() never raises for per-connection failures; unexpected exceptions are left
    to the listener, which logs them and closes the connection.
    """
    def __init__(
        self,
        cfg: ProxyConfig,
        conn_id: str,
        c_reader: asyncio.StreamReader,
        c_writer: asyncio.StreamWriter,
        conn_store: ConnectionStore,
        metrics: Metrics,
    ):
        self.cfg = cfg
        self.conn_id = conn_id
        self.c_reader = c_reader
        self.c_writer = c_writer
        self.conn_store = conn_store
        self.metrics = metrics

        self.u_reader: Optional[asyncio.StreamReader] = None
        self.u_writer: Optional[asyncio.StreamWriter] = None
        self.pool = BufferPool(cfg.buffers.count, cfg.buffers.size)

        self.state = SessionState.HANDSHAKE
        self.history: List[SessionState] = [self.state]
        self.requests = 0
        self.close_reason: Optional[str] = None
        self.closed_by: Optional[str] = None

        # a response head has been sent to the client; no gateway error after that
        self._response_started = False

    def _transition(self, new: SessionState) -> None:
        if new not in TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid session transition {self.state.value} -> {new.value}")
        LOG.debug("session %s: %s -> %s", self.conn_id, self.state.value, new.value)
        self.state = new
        self.history.append(new)

    async def _finish(self, state: SessionState, reason: str, closed_by: str) -> None:
        if self.state in _TERMINAL:
            return
        self._transition(state)
        self.close_reason = reason
        self.closed_by = closed_by
        await self.conn_store.set_state(self.conn_id, state.value)
        await self.metrics.inc("sessions_closed_clean" if state is SessionState.CLOSED_CLEAN
                               else "sessions_closed_error")

    async def run(self) -> None:
        try:
            try:
                self.u_reader, self.u_writer = await self._open_upstream()
            except UpstreamUnavailable as e:
                await self._upstream_failed(e, await_request=True)
                await self._finish(SessionState.CLOSED_ERROR, "upstream_connect_fail", "proxy")
                return

            await self.conn_store.set_state(self.conn_id, self.state.value)
            while await self._exchange():
                self._transition(SessionState.HANDSHAKE)
                await self.conn_store.set_state(self.conn_id, self.state.value)

            if self.state is SessionState.TUNNEL:
                await self.conn_store.set_state(self.conn_id, self.state.value)
                await self.metrics.inc("tunnels_opened")
                await self._tunnel()

            await self._finish(SessionState.CLOSED_CLEAN, "completed", "proxy")

        except PeerClosed as e:
            await self._finish(SessionState.CLOSED_CLEAN, e.reason, e.side)

        except UpstreamUnavailable as e:
            await self._upstream_failed(e)
            await self._finish(SessionState.CLOSED_ERROR, "upstream_unavailable", "upstream")

        except ProtocolViolation as e:
            await self.metrics.inc("protocol_violations")
            await self.conn_store.set_error(self.conn_id, str(e))
            LOG.info("protocol violation conn_id=%s: %s", self.conn_id, e)
            await self._finish(SessionState.CLOSED_ERROR, f"{e.side}_protocol_error", e.side)

        except ReadTimeout as e:
            await self.conn_store.set_error(self.conn_id, str(e))
            LOG.info("read timeout conn_id=%s: %s", self.conn_id, e)
            await self._finish(SessionState.CLOSED_ERROR, f"{e.side}_read_timeout", "proxy")

        except (ConnectionError, ssl.SSLError) as e:
            await self.conn_store.set_error(self.conn_id, f"{type(e).__name__}: {e}")
            LOG.debug("connection error conn_id=%s: %r", self.conn_id, e)
            await self._finish(SessionState.CLOSED_ERROR, classify_close_reason(e), "unknown")

        finally:
            await close_writer(self.u_writer)

    async def _open_upstream(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        host, port = _parse_hostport(self.cfg.upstream.addr)
        timeout = self.cfg.upstream.connect_timeout
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(host=host, port=port, limit=self.cfg.policy.header_max),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise UpstreamUnavailable(f"connect to {self.cfg.upstream.addr} timed out after {timeout}s") from None
        except OSError as e:
            raise UpstreamUnavailable(f"connect to {self.cfg.upstream.addr} failed: {e}") from e

    async def _upstream_failed(self, e: UpstreamUnavailable, await_request: bool = False) -> None:
        await self.metrics.inc("upstream_unavailable")
        await self.conn_store.set_error(self.conn_id, str(e))
        LOG.warning("upstream unavailable conn_id=%s upstream=%s: %s", self.conn_id, self.cfg.upstream.addr, e)
        if self._response_started:
            return

        if await_request:
            # let the request head arrive so the client reads the error instead of a reset
            try:
                await asyncio.wait_for(
                    self.c_reader.readuntil(HEAD_END),
                    timeout=min(self.cfg.policy.read_timeout, GATEWAY_ERROR_REQUEST_WAIT),
                )
            except (asyncio.TimeoutError, asyncio.IncompleteReadError, asyncio.LimitOverrunError,
                    ConnectionError) as re:
                LOG.debug("gateway error: no request head conn_id=%s: %r", self.conn_id, re)

        self._response_started = True
        try:
            self.c_writer.write(gateway_error_response(e.status))
            await self.c_writer.drain()
        except ConnectionError:
            LOG.debug("gateway error: client gone conn_id=%s", self.conn_id, exc_info=True)

    async def _read_client_head(self) -> bytes:
        for _ in range(MAX_LEADING_BLANK_HEADS + 1):
            try:
                raw = await asyncio.wait_for(
                    self.c_reader.readuntil(HEAD_END), timeout=self.cfg.policy.idle_timeout,
                )
            except asyncio.TimeoutError:
                raise PeerClosed("client_idle_timeout", "proxy") from None
            except asyncio.IncompleteReadError as e:
                if e.partial.strip():
                    raise ProtocolViolation("client", "connection closed inside request head") from None
                raise PeerClosed("client_fin", "client") from None
            except asyncio.LimitOverrunError:
                raise ProtocolViolation("client", "request head too large") from None
            # "\r\n\r\n" ahead of the start line reads as an empty head; skip it
            if raw.strip(b"\r\n"):
                return raw
        raise ProtocolViolation("client", "too many empty lines before the request line")

    async def _watch_upstream_idle(self) -> None:
        """Return only by raising: the upstream closed or spoke out of turn between exchanges."""
        try:
            data = await self.u_reader.read(1)
        except ConnectionError:
            raise PeerClosed("upstream_rst", "upstream") from None
        if data:
            raise ProtocolViolation("upstream", f"unsolicited data between responses {data!r}")
        raise PeerClosed("upstream_fin", "upstream")

    async def _read_request_head(self) -> bytes:
        """
        Wait for the next request head while watching the idle upstream connection.

        An upstream close tears the session down at once instead of turning the
        client's next request into a gateway error.
        """
        head_task = asyncio.create_task(self._read_client_head())
        watch_task = asyncio.create_task(self._watch_upstream_idle())
        try:
            await asyncio.wait({head_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
            if watch_task.done():
                watch_task.result()
            return head_task.result()
        finally:
            await _reap(head_task)
            await _reap(watch_task)

    async def _read_response_head(self) -> Tuple[bytes, ResponseHead]:
        timeout = self.cfg.policy.read_timeout
        while True:
            try:
                raw = await asyncio.wait_for(self.u_reader.readuntil(HEAD_END), timeout=timeout)
            except asyncio.TimeoutError:
                raise UpstreamUnavailable(f"no response head within {timeout}s", status=504) from None
            except asyncio.IncompleteReadError:
                raise UpstreamUnavailable("upstream closed the connection before responding") from None
            except asyncio.LimitOverrunError:
                raise ProtocolViolation("upstream", "response head too large") from None
            except ConnectionError as e:
                raise UpstreamUnavailable(f"upstream read failed: {e}") from e

            resp = parse_response_head(raw)
            if 100 <= resp.status < 200 and resp.status != 101:
                await self._write_client(raw)
                continue
            return raw, resp

    async def _send_upstream(self, data: bytes) -> None:
        try:
            self.u_writer.write(data)
            await self.u_writer.drain()
        except ConnectionError as e:
            raise UpstreamUnavailable(f"upstream write failed: {e}") from e

    async def _write_client(self, data: bytes) -> None:
        self.c_writer.write(data)
        await self.c_writer.drain()
        await self.conn_store.add_bytes(self.conn_id, down=len(data))

    async def _forward_request_body(self, framing: BodyFraming) -> None:
        if framing.kind == "none":
            return
        sizes = itertools.repeat(self.cfg.buffers.size)
        async for data in body_iter(self.c_reader, framing, sizes, self.cfg.policy.read_timeout, "client"):
            await self._send_upstream(data)
            await self.conn_store.add_bytes(self.conn_id, up=len(data))

    async def _await_response_head(self, body_task: asyncio.Task) -> Tuple[bytes, ResponseHead]:
        """Wait for the response head while the request body is still being forwarded."""
        head_task = asyncio.create_task(self._read_response_head())
        try:
            while not head_task.done():
                waiting = {head_task} if body_task.done() else {head_task, body_task}
                await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if body_task.done() and not body_task.cancelled() and body_task.exception() is not None:
                    raise body_task.exception()
            return head_task.result()
        finally:
            await _reap(head_task)

    async def _exchange(self) -> bool:
        """Proxy one request/response. Returns True to keep the connection for another request."""
        self._response_started = False
        raw = await self._read_request_head()
        req = parse_request_head(raw)
        req_framing = request_body_framing(req)
        out_headers = rewrite_request_headers(req.headers, self.cfg.upstream.addr)

        self.requests += 1
        await self.metrics.inc("requests")
        await self.conn_store.set_last_path(self.conn_id, req.target)
        LOG.debug("request conn_id=%s %s %s upgrade=%r", self.conn_id, req.method, req.target,
                  get_header(req.headers, "Upgrade"))

        head = serialize_head(req.start_line, out_headers)
        await self._send_upstream(head)
        await self.conn_store.add_bytes(self.conn_id, up=len(head))

        body_task = asyncio.create_task(self._forward_request_body(req_framing))
        try:
            resp_raw, resp = await self._await_response_head(body_task)

            if resp.status == 101:
                await body_task
                await self._write_client(resp_raw)
                self._transition(SessionState.TUNNEL)
                LOG.debug("upgrade conn_id=%s protocol=%r", self.conn_id, get_header(resp.headers, "Upgrade"))
                return False

            self._transition(SessionState.HTTP_STREAM)
            await self.conn_store.set_state(self.conn_id, self.state.value)
            framing = response_body_framing(req.method, resp)
            self._response_started = True
            await self._write_client(resp_raw)

            if framing.kind != "none":
                sizes = chunk_sizes(self.cfg.buffers.initial_size, self.cfg.buffers.size)
                source = body_iter(self.u_reader, framing, sizes, self.cfg.policy.read_timeout, "upstream")
                await relay_buffered(_tap(source, self._note_down), self.c_writer, self.pool)

            keep_alive = (
                framing.kind != "close"
                and wants_keep_alive(req.version, req.headers)
                and wants_keep_alive(resp.version, resp.headers)
            )
            if not body_task.done():
                LOG.debug("upstream answered before the request body ended conn_id=%s", self.conn_id)
                return False
            await body_task
            return keep_alive
        finally:
            await _reap(body_task)

    async def _note_down(self, data: bytes) -> None:
        await self.conn_store.add_bytes(self.conn_id, down=len(data))

    async def _note_up(self, data: bytes) -> None:
        await self.conn_store.add_bytes(self.conn_id, up=len(data))

    async def _tunnel(self) -> None:
        """
        Raw duplex copy after 101 Switching Protocols.

        Ends with PeerClosed when either side sends EOF, or ReadTimeout when no
        bytes move in either direction for tunnel_idle_timeout seconds.
        """
        loop = asyncio.get_running_loop()
        idle = self.cfg.policy.tunnel_idle_timeout
        last_io = loop.time()

        async def note(data: bytes, up: bool) -> None:
            nonlocal last_io
            last_io = loop.time()
            if up:
                await self._note_up(data)
            else:
                await self._note_down(data)

        async def client_to_upstream() -> None:
            while True:
                data = await self.c_reader.read(self.cfg.buffers.size)
                if not data:
                    raise PeerClosed("client_fin", "client")
                await note(data, up=True)
                self.u_writer.write(data)
                await self.u_writer.drain()

        async def upstream_to_client() -> None:
            sizes = itertools.repeat(self.cfg.buffers.size)
            source = iter_until_eof(self.u_reader, sizes, None, "upstream")
            await relay_buffered(_tap(source, lambda d: note(d, up=False)), self.c_writer, self.pool)
            raise PeerClosed("upstream_fin", "upstream")

        async def watchdog() -> None:
            tick = max(0.05, min(1.0, idle / 4))
            while True:
                await asyncio.sleep(tick)
                if loop.time() - last_io >= idle:
                    raise ReadTimeout("tunnel_idle", idle)

        tasks = [
            asyncio.create_task(client_to_upstream()),
            asyncio.create_task(upstream_to_client()),
        ]
        if idle > 0:
            tasks.append(asyncio.create_task(watchdog()))

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for t in done:
            if not t.cancelled() and t.exception() is not None:
                raise t.exception()


async def _reap(task: asyncio.Task) -> None:
    """Cancel (if still running) and join a child task, consuming its outcome."""
    if not task.done():
        task.cancel()
    await asyncio.gather(task, return_exceptions=True)


# Listener
class ProxyListener:
    """
    The single TLS listener.

    Responsibilities:
      - build the inbound SSLContext and bind (both raise ConfigurationError)
      - per accepted connection: bound concurrency (max_connections), manual TLS
        handshake via StreamWriter.start_tls so failures can be classified and
        counted, then run one ProxiedSession
      - keep every connection task so stop() can cancel and join them
    """
    def __init__(self, cfg: ProxyConfig, conn_store: Optional[ConnectionStore] = None,
                 metrics: Optional[Metrics] = None):
        self.cfg = cfg
        self.conn_store = conn_store if conn_store is not None else ConnectionStore()
        self.metrics = metrics if metrics is not None else Metrics()

        self._ssl_ctx: Optional[ssl.SSLContext] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()
        self._conn_sem = asyncio.Semaphore(cfg.policy.max_connections)

        # SNI from the servername callback (sslobj -> sni)
        self._sni_map: "weakref.WeakKeyDictionary[ssl.SSLObject, str]" = weakref.WeakKeyDictionary()

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def address(self) -> Tuple[str, int]:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("listener is not started")
        sockname = self._server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    def _build_ssl_context(self) -> ssl.SSLContext:
        ctx = build_inbound_ssl_context(self.cfg.tls)

        def _sni_cb(sslobj: ssl.SSLObject, servername: Optional[str], _ctx: ssl.SSLContext) -> None:
            if servername:
                self._sni_map[sslobj] = servername

        ctx.sni_callback = _sni_cb
        return ctx

    async def start(self) -> None:
        host, port = _parse_hostport(self.cfg.listen)
        self._ssl_ctx = self._build_ssl_context()

        try:
            self._server = await asyncio.start_server(
                self._handle_client,
                host=host,
                port=port,
                limit=self.cfg.policy.header_max,
                ssl=None,  # TLS happens per connection in _tls_handshake
            )
        except OSError as e:
            raise ConfigurationError(f"cannot listen on {self.cfg.listen}: {e}") from e

        bound = self.address
        LOG.info("Listening on %s:%s (TLS %s..%s) -> upstream http://%s",
                 bound[0], bound[1], self.cfg.tls.min_version, self.cfg.tls.max_version, self.cfg.upstream.addr)

    async def serve_forever(self) -> None:
        if self._server is None:
            raise RuntimeError("listener is not started")
        await self._server.serve_forever()

    async def stop(self) -> None:
        srv = self._server
        self._server = None
        if srv is not None:
            srv.close()

        # sessions first: newer asyncio waits for open connections in wait_closed()
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        if srv is not None:
            await srv.wait_closed()
        LOG.info("Listener stopped (%d sessions cancelled)", len(tasks))

    async def _tls_handshake(self, writer: asyncio.StreamWriter) -> TlsInfo:
        try:
            await writer.start_tls(self._ssl_ctx, ssl_handshake_timeout=self.cfg.tls.handshake_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise HandshakeError(classify_tls_in_fail(e), _one_line(str(e) or repr(e))) from e

        sslobj: Optional[ssl.SSLObject] = writer.get_extra_info("ssl_object")
        info = tls_info_from_sslobj(sslobj)
        if sslobj is not None:
            info.sni = self._sni_map.get(sslobj)
        return info

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """
        Accept handler used by asyncio.start_server.

        Steps:
          1) acquire the max_connections semaphore
          2) register ConnInfo
          3) TLS handshake; failure closes only this connection
          4) run ProxiedSession
          5) finally: close the client stream, move ConnInfo to the closed ring
        """
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)

        peer = writer.get_extra_info("peername") or ("?", 0)
        client_ip, client_port = str(peer[0]), int(peer[1])

        try:
            await self._conn_sem.acquire()
        except asyncio.CancelledError:
            await close_writer(writer)
            if task is not None:
                self._tasks.discard(task)
            raise

        conn_id = str(uuid.uuid4())
        token = CURRENT_CONN_ID.set(conn_id)
        now = time.time()
        await self.metrics.inc("connections_accepted")
        await self.conn_store.add(ConnInfo(
            id=conn_id,
            client_ip=client_ip,
            client_port=client_port,
            upstream_addr=self.cfg.upstream.addr,
            opened_ts=now,
            last_activity_ts=now,
        ))

        close_reason: Optional[str] = None
        closed_by: Optional[str] = None
        tls_ok = False
        try:
            try:
                tls_in = await self._tls_handshake(writer)
                tls_ok = True
            except HandshakeError as e:
                await self.metrics.inc("tls_handshake_failed")
                await self.conn_store.set_error(conn_id, f"tls_in_fail: {e}")
                log_throttled(logging.INFO, f"tls_in_fail:{e.reason}",
                              "TLS handshake failed client=%s:%s reason=%s detail=%s",
                              client_ip, client_port, e.reason, e.detail, interval_s=5.0)
                close_reason, closed_by = f"tls_in_fail:{e.reason}", "client"
                return

            await self.metrics.inc("tls_handshake_ok")
            await self.conn_store.set_tls_in(conn_id, tls_in)
            LOG.debug("TLS-in ok conn_id=%s client=%s:%s version=%s cipher=%s sni=%s",
                      conn_id, client_ip, client_port, tls_in.version, tls_in.cipher, tls_in.sni)

            session = ProxiedSession(self.cfg, conn_id, reader, writer, self.conn_store, self.metrics)
            await session.run()
            close_reason, closed_by = session.close_reason, session.closed_by

        except asyncio.CancelledError:
            close_reason, closed_by = "cancelled", "proxy"
            raise

        except Exception as e:
            close_reason, closed_by = classify_close_reason(e), "proxy"
            await self.conn_store.set_error(conn_id, f"handler error: {e!r}")
            LOG.warning("connection handler failed conn_id=%s client=%s:%s reason=%s",
                        conn_id, client_ip, client_port, close_reason, exc_info=True)

        finally:
            if tls_ok:
                await close_writer(writer)
            else:
                # the failed upgrade detached the stream protocol; nothing to wait for
                writer.transport.abort()
            await self.conn_store.remove(conn_id, close_reason=close_reason, closed_by=closed_by)
            LOG.debug("closed conn_id=%s reason=%s by=%s", conn_id, close_reason, closed_by)
            CURRENT_CONN_ID.reset(token)
            self._conn_sem.release()
            if task is not None:
                self._tasks.discard(task)


# TUI
def _fmt_bytes(n: int) -> str:
    for unit in ("B", "K", "M", "G"):
        if n < 1024:
            return f"{n}{unit}"
        n //= 1024
    return f"{n}T"


def conn_row_cells(ci: ConnInfo) -> List[str]:
    """Text cells of one Connections row (last cell is free-form)."""
    tail: List[str] = []
    if ci.closed_ts is not None:
        tail.append(f"{ci.closed_by or '?'}:{ci.close_reason or '?'}")
    if ci.last_error:
        tail.append(ci.last_error)
    if ci.last_path and not tail:
        tail.append(ci.last_path)
    return [
        f"{ci.age_s()}s",
        f"{ci.idle_s()}s",
        f"{ci.client_ip}:{ci.client_port}",
        ci.tls_in.version or "-",
        ci.state,
        str(ci.requests),
        _fmt_bytes(ci.bytes_in),
        _fmt_bytes(ci.bytes_out),
        " | ".join(tail)[:200],
    ]


def conn_is_error(ci: ConnInfo) -> bool:
    if ci.error_count > 0 or ci.last_error:
        return True
    cr = (ci.close_reason or "").lower()
    return any(x in cr for x in ("fail", "error", "timeout", "rst", "unavailable"))


class SelectableRow(urwid.WidgetWrap):
    def selectable(self) -> bool:
        return True

    def keypress(self, size, key):
        return key


class ConnectionsList(urwid.WidgetWrap):
    """
    Connections table.

    show_mode:
      - active: only currently open connections
      - all: active + closed history
      - closed: only closed history
    """
    COLUMNS = [("Age", 6), ("Idle", 6), ("Client", 21), ("TLS", 8), ("State", 12),
               ("Reqs", 5), ("In", 7), ("Out", 7)]

    def __init__(self, conn_store: ConnectionStore):
        self.conn_store = conn_store
        self.walker = urwid.SimpleFocusListWalker([])
        self.listbox = urwid.ListBox(self.walker)
        self.visible_conns: List[ConnInfo] = []
        self.show_mode = "active"

        self._hdr_mode = urwid.Text(self._mode_label())
        header = urwid.Columns(
            [("fixed", w, urwid.Text(name)) for name, w in self.COLUMNS]
            + [urwid.Text("Close / last error"), ("fixed", 12, self._hdr_mode)],
            dividechars=1,
        )
        frame = urwid.Frame(self.listbox, header=urwid.AttrMap(header, "header"))
        super().__init__(frame)

    def _mode_label(self) -> str:
        return f"Mode: {self.show_mode}"

    def cycle_mode(self) -> str:
        """Cycle display mode: active -> all -> closed -> active."""
        order = ["active", "all", "closed"]
        self.show_mode = order[(order.index(self.show_mode) + 1) % len(order)]
        self._hdr_mode.set_text(self._mode_label())
        return self.show_mode

    async def refresh(self) -> None:
        conns = await self.conn_store.snapshot(include_closed=self.show_mode != "active")
        if self.show_mode == "closed":
            conns = [c for c in conns if c.closed_ts is not None]
        self.visible_conns = conns

        rows: List[urwid.Widget] = []
        for ci in conns:
            cells = conn_row_cells(ci)
            cols = [("fixed", w, urwid.Text(cell[:w])) for (_, w), cell in zip(self.COLUMNS, cells)]
            cols.append(urwid.Text(cells[-1]))
            row = SelectableRow(urwid.Columns(cols, dividechars=1))
            rows.append(urwid.AttrMap(row, "row_error" if conn_is_error(ci) else "bg", focus_map="focus"))
        self.walker[:] = rows


class TuiApp:
    """
    Live view of the listener: counters in the header, connections below.

    Hotkeys: Q quit, L cycle mode (active/all/closed).
    """
    palette = [
        ("bg", "light gray", "dark blue"),
        ("row_error", "light red", "dark blue"),
        ("header", "black", "light gray"),
        ("focus", "black", "light cyan"),
        ("footer", "black", "light gray"),
    ]

    def __init__(self, listener: ProxyListener, loop: asyncio.AbstractEventLoop):
        self.listener = listener
        self.aio_loop = loop

        self.conns = ConnectionsList(listener.conn_store)
        self.title = urwid.Text("")
        self.counters = urwid.Text("")
        self.hotkeys = urwid.Text("Q quit | L cycle mode (active/all/closed)")

        head = urwid.Pile([urwid.AttrMap(self.title, "header"), urwid.AttrMap(self.counters, "bg")])
        self.top = urwid.Frame(urwid.AttrMap(self.conns, "bg"), header=head,
                               footer=urwid.AttrMap(self.hotkeys, "footer"))
        self.loop = urwid.MainLoop(
            self.top,
            palette=self.palette,
            event_loop=urwid.AsyncioEventLoop(loop=self.aio_loop),
            unhandled_input=self.on_key,
        )
        self._tick_task: Optional[asyncio.Task] = None

    def on_key(self, key):
        if key in ("q", "Q"):
            raise urwid.ExitMainLoop()
        if key in ("l", "L"):
            self.conns.cycle_mode()
            self._schedule_tick(0)

    async def render_counters(self) -> None:
        cfg = self.listener.cfg
        self.title.set_text(f" tlsgate {__version__}  {cfg.listen} (TLS) -> http://{cfg.upstream.addr}")
        g = await self.listener.metrics.snapshot()
        self.counters.set_text("  ".join(f"{k}={g[k]}" for k in sorted(g)) or "no traffic yet")

    async def _tick(self) -> None:
        try:
            await self.render_counters()
            await self.conns.refresh()
        except Exception:
            log_throttled(logging.DEBUG, "tui_tick_refresh_failed", "TUI refresh tick failed",
                          interval_s=5.0, exc_info=True)
        self._schedule_tick(0.5)

    def _schedule_tick(self, delay: float) -> None:
        def _cb(_loop, _data):
            self._tick_task = self.aio_loop.create_task(self._tick())
        self.loop.set_alarm_in(delay, _cb)

    def run(self) -> None:
        self._schedule_tick(0)
        try:
            self.loop.run()
        finally:
            if self._tick_task is not None:
                self._tick_task.cancel()
            self.aio_loop.run_until_complete(self.listener.stop())


# CLI / Modes
async def run_headless(cfg: ProxyConfig) -> None:
    listener = ProxyListener(cfg)
    await listener.start()

    stop_ev = asyncio.Event()

    def _sig(*_):
        stop_ev.set()

    loop = asyncio.get_running_loop()
    for s in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(s, _sig)
        except NotImplementedError:
            pass

    serve = asyncio.create_task(listener.serve_forever())
    try:
        await stop_ev.wait()
    finally:
        LOG.info("Shutting down")
        await listener.stop()
        await _reap(serve)


def run_tui_sync(cfg: ProxyConfig) -> None:
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        listener = ProxyListener(cfg)
        loop.run_until_complete(listener.start())
        TuiApp(listener, loop).run()
    finally:
        loop.close()


def cmd_check(config_path: str) -> int:
    try:
        cfg = load_config(config_path)
        build_inbound_ssl_context(cfg.tls)
    except ConfigurationError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    print("OK")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    default_config = os.path.join(os.getcwd(), "config.yaml")
    default_tui_log = os.path.join(os.getcwd(), "tlsgate.log")

    p = argparse.ArgumentParser(
        prog="tlsgate",
        description=(
            "TLS-terminating reverse proxy for a single plain-HTTP upstream,\n"
            "with WebSocket / protocol-upgrade passthrough.\n\n"
            "Default mode: headless service. Use --tui for the live connections view.\n"
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    p.add_argument("--config", default=default_config,
                   help=f"Path to config YAML (default: {default_config})")
    p.add_argument("--log", default=None,
                   help=f"Path to log file (default: stderr; {default_tui_log} with --tui)")
    p.add_argument("--log-level", default="INFO",
                   help="Log level: DEBUG, INFO, WARNING, ERROR (default: INFO)")

    g = p.add_mutually_exclusive_group()
    g.add_argument("--tui", action="store_true", help="Run with the connections TUI.")
    g.add_argument("--check", action="store_true", help="Validate config and certificate, then exit.")
    g.add_argument("--dump-example-config", action="store_true", help="Print example config and exit.")

    args = p.parse_args(argv)

    if args.dump_example_config:
        print(dump_example_config())
        return 0

    if args.check:
        return cmd_check(args.config)

    log_path = args.log or (default_tui_log if args.tui else None)
    setup_logging(log_path, args.log_level)

    try:
        cfg = load_config(args.config)
        if args.tui:
            run_tui_sync(cfg)
        else:
            asyncio.run(run_headless(cfg))
    except ConfigurationError as e:
        LOG.error("Startup failed: %s", e)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
