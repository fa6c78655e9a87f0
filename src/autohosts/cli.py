#!/usr/bin/env python3
"""autohosts - dnsmasq Manager with Remote Hosts Sync

Keeps a dnsmasq supplementary hosts file (--addn-hosts) in sync with a set of
remote hosts-list sources, and supervises the dnsmasq daemon that consumes it.
The daemon may have been started by a previous run of this manager or by
something else entirely, so its state is always derived from the live process
table rather than from a remembered handle.

Environment variables:

    Storage:
        SETTINGS_PATH          YAML settings file (default: /app/data/settings.yaml)
                               Example:
                                 cron_expression: "*/5 * * * *"
                                 hosts_file_path: /app/data/extra_hosts.conf
                                 fetch_timeout_ms: 10000
        SOURCES_PATH           JSON source registry (default: /app/data/sources.json)

    Hosts Sync:
        DNSMASQ_HOSTS          Default hosts file path when settings do not set one
                               (default: /app/data/extra_hosts.conf)
        HOSTS_FETCH_CRON       Default 5-field cron expression (default: */5 * * * *)
        HOSTS_FETCH_TIMEOUT_MS Default per-source fetch timeout, minimum 1000
                               (default: 10000)

    dnsmasq:
        DNSMASQ_BINARY         Daemon executable (default: dnsmasq)
        DNSMASQ_ARGS           Extra daemon arguments, shell-quoted
                               (e.g. "--keep-in-foreground --no-resolv")
        DNSMASQ_LOG_PATH       File receiving daemon stdout/stderr
                               (default: /app/data/dnsmasq.log)
        DNSMASQ_AUTOSTART      Start the daemon in watch mode (default: true)

    Runtime:
        SYNC_MODE              "once" (single pass) or "watch" (cron schedule)
                               (default: watch)
        SETTINGS_POLL_SECONDS  How often watch mode checks the settings file for
                               a changed cron expression (default: 30)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

Published hosts file format:

    # DNSMasq hosts file
    # Generated by autohosts
    # Last updated: 2024-01-01T00:00:00+00:00
    # Total entries: 2

    10.0.0.1 app.example.com
    10.0.0.2 db.example.com db
"""

from __future__ import annotations

import concurrent.futures
import json
import logging
import os
import re
import shlex
import subprocess
import sys
import threading
import time
import uuid
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import psutil
import requests
import yaml
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

# =============================================================================
# File Utilities
# =============================================================================


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except OSError:
        return 0.0


def _atomic_write_text(path: Path, content: str) -> None:
    """Write content to a sibling temp file, then rename it over path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp_path.write_text(content, "utf-8")
        tmp_path.replace(path)
    except OSError:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


# =============================================================================
# Configuration
# =============================================================================

# Storage
SETTINGS_PATH = os.getenv("SETTINGS_PATH", "/app/data/settings.yaml")
SOURCES_PATH = os.getenv("SOURCES_PATH", "/app/data/sources.json")

# Hosts sync defaults
DEFAULT_HOSTS_FILE = os.getenv("DNSMASQ_HOSTS", "/app/data/extra_hosts.conf")
DEFAULT_CRON_EXPRESSION = os.getenv("HOSTS_FETCH_CRON", "*/5 * * * *")
DEFAULT_FETCH_TIMEOUT_MS = int(os.getenv("HOSTS_FETCH_TIMEOUT_MS", "10000"))
MIN_FETCH_TIMEOUT_MS = 1000
USER_AGENT = "DNSMasq-Manager/1.0"

# dnsmasq
DNSMASQ_BINARY = os.getenv("DNSMASQ_BINARY", "dnsmasq")
DNSMASQ_ARGS = os.getenv("DNSMASQ_ARGS", "")
DNSMASQ_LOG_PATH = os.getenv("DNSMASQ_LOG_PATH", "/app/data/dnsmasq.log")
DNSMASQ_AUTOSTART = _parse_bool(os.getenv("DNSMASQ_AUTOSTART"), default=True)
DNS_PORT = 53

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "watch")
SETTINGS_POLL_SECONDS = int(os.getenv("SETTINGS_POLL_SECONDS", "30"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Enums
# =============================================================================


class ErrorKind(Enum):
    """Why an operation failed.

    The first five kinds are produced at the OS and network boundaries
    (process introspection, signalling, HTTP). The rest describe validation
    and precondition failures of the manager's own operations.
    """

    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN = "unknown"

    INVALID = "invalid"
    DUPLICATE = "duplicate"
    ALREADY_RUNNING = "already_running"
    NOT_RUNNING = "not_running"
    BUSY = "busy"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a public operation. Failures carry a kind, never raise."""

    success: bool
    message: str
    kind: Optional[ErrorKind] = None
    pid: Optional[int] = None
    hosts_count: Optional[int] = None
    source_id: Optional[str] = None


@dataclass(frozen=True)
class HostsLine:
    """A validated hosts record: one address followed by its hostnames."""

    address: str
    hostnames: tuple

    def __str__(self) -> str:
        return " ".join((self.address,) + tuple(self.hostnames))


@dataclass(frozen=True)
class SyncResult:
    hosts_count: int
    errors_count: int


@dataclass(frozen=True)
class FetchError:
    message: str
    kind: ErrorKind = ErrorKind.UNKNOWN
    status: Optional[int] = None
    body: Optional[str] = None

    def describe(self) -> str:
        details = self.message
        if self.status is not None:
            details += f" | status: {self.status}"
        if self.body:
            details += f" | data: {self.body}"
        return details


@dataclass(frozen=True)
class FetchResult:
    ok: bool
    text: str = ""
    error: Optional[FetchError] = None


@dataclass(frozen=True)
class HostsFileStats:
    file_path: str
    exists: bool
    size: Optional[int] = None
    last_modified: Optional[datetime] = None
    line_count: Optional[int] = None


@dataclass(frozen=True)
class ProcessStatus:
    """Snapshot of the daemon's state, derived from the live process table."""

    is_running: bool
    pid: Optional[int] = None
    start_time: Optional[datetime] = None
    port: Optional[int] = None
    command: Optional[str] = None


@dataclass(frozen=True)
class Source:
    """A registered remote hosts-list URL."""

    id: str
    url: str
    name: str = ""
    enabled: bool = True
    last_fetch: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "name": self.name,
            "enabled": self.enabled,
            "last_fetch": self.last_fetch.isoformat() if self.last_fetch else None,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Source":
        return cls(
            id=str(data["id"]),
            url=str(data["url"]),
            name=str(data.get("name") or ""),
            enabled=_parse_bool(data.get("enabled"), default=True),
            last_fetch=_parse_timestamp(data.get("last_fetch")),
            last_error=data.get("last_error") or None,
        )


@dataclass(frozen=True)
class Settings:
    cron_expression: str = DEFAULT_CRON_EXPRESSION
    hosts_file_path: str = DEFAULT_HOSTS_FILE
    fetch_timeout_ms: int = DEFAULT_FETCH_TIMEOUT_MS


class SyncInProgressError(RuntimeError):
    """Raised when a non-blocking sync pass finds another pass in flight."""


# =============================================================================
# Utility Functions
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.debug(f"Ignoring malformed timestamp: {value}")
        return None


def validate_cron_expression(expression: Any) -> Optional[str]:
    """Return None if expression is valid 5-field cron syntax, else the reason."""
    if not isinstance(expression, str) or not expression.strip():
        return "cron expression is required"
    try:
        CronTrigger.from_crontab(expression.strip(), timezone="UTC")
    except (ValueError, TypeError) as e:
        return str(e)
    return None


def resolve_timeout_ms(override: Optional[int], configured: Optional[int]) -> int:
    """Pick the per-source timeout: override, then settings, then default; floored."""
    timeout = override or configured or DEFAULT_FETCH_TIMEOUT_MS
    return max(MIN_FETCH_TIMEOUT_MS, int(timeout))


def classify_os_error(error: BaseException) -> ErrorKind:
    """Map an OS/psutil exception onto an ErrorKind."""
    if isinstance(error, (psutil.NoSuchProcess, ProcessLookupError, FileNotFoundError)):
        return ErrorKind.NOT_FOUND
    if isinstance(error, (psutil.AccessDenied, PermissionError)):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(error, (psutil.TimeoutExpired, subprocess.TimeoutExpired)):
        return ErrorKind.TIMEOUT
    return ErrorKind.UNKNOWN


# =============================================================================
# Hosts Parsing
# =============================================================================

IPV4_RE = re.compile(r"(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})", re.ASCII)
IPV6_RE = re.compile(r"(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}")


def is_valid_ipv4(address: str) -> bool:
    match = IPV4_RE.fullmatch(address)
    if not match:
        return False
    return all(0 <= int(octet) <= 255 for octet in match.groups())


def is_valid_ipv6(address: str) -> bool:
    """Full eight-group form only; compressed '::' notation is rejected."""
    return IPV6_RE.fullmatch(address) is not None


def is_valid_address(address: str) -> bool:
    return is_valid_ipv4(address) or is_valid_ipv6(address)


def parse_hosts_content(content: str) -> List[HostsLine]:
    """Parse hosts-file text into validated records.

    Blank lines, comment lines and lines whose leading token is not an IPv4
    or full-form IPv6 address are dropped. Tokens after the address are kept
    verbatim, inline comments included. Order is preserved and duplicates
    are kept.
    """
    hosts: List[HostsLine] = []
    for raw_line in (content or "").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        tokens = line.split()
        if len(tokens) < 2:
            continue
        if not is_valid_address(tokens[0]):
            continue
        hosts.append(HostsLine(address=tokens[0], hostnames=tuple(tokens[1:])))
    return hosts


# =============================================================================
# Hosts Fetching and Publishing
# =============================================================================


class HostsFetcher:
    """Fetches a hosts list over HTTP; failures come back as values."""

    BODY_SNIPPET_LENGTH = 200
    CHUNK_SIZE = 8192

    def __init__(self, session: Optional[requests.Session] = None, user_agent: str = USER_AGENT):
        self._session = session or requests.Session()
        self._user_agent = user_agent

    def fetch(self, url: str, timeout_ms: int = DEFAULT_FETCH_TIMEOUT_MS) -> FetchResult:
        """GET url, bounding the whole request (connect, headers, body) by timeout_ms.

        requests applies its own timeout per socket read. The download runs on
        a worker thread that is abandoned at the deadline.
        """
        timeout = timeout_ms / 1000.0
        deadline = time.monotonic() + timeout
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self._download, url, timeout, deadline)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            return FetchResult(
                ok=False,
                error=FetchError(f"timeout of {timeout_ms}ms exceeded", ErrorKind.TIMEOUT),
            )
        except requests.exceptions.Timeout as e:
            return FetchResult(ok=False, error=FetchError(str(e), ErrorKind.TIMEOUT))
        except requests.exceptions.ConnectionError as e:
            return FetchResult(ok=False, error=FetchError(str(e), ErrorKind.NETWORK_ERROR))
        except requests.exceptions.RequestException as e:
            return FetchResult(ok=False, error=FetchError(str(e), ErrorKind.UNKNOWN))
        finally:
            executor.shutdown(wait=False)

    def _download(self, url: str, timeout: float, deadline: float) -> FetchResult:
        headers = {"User-Agent": self._user_agent}
        with self._session.get(url, timeout=timeout, headers=headers, stream=True) as response:
            chunks = []
            for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                if time.monotonic() > deadline:
                    raise requests.exceptions.Timeout(f"timeout of {timeout * 1000:.0f}ms exceeded")
                chunks.append(chunk)
            text = b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")

            try:
                response.raise_for_status()
            except requests.exceptions.HTTPError as e:
                body = text[: self.BODY_SNIPPET_LENGTH] or None
                return FetchResult(
                    ok=False,
                    error=FetchError(
                        str(e), ErrorKind.NETWORK_ERROR, status=response.status_code, body=body
                    ),
                )
            return FetchResult(ok=True, text=text)


class HostsFileWriter:
    """Regenerates the whole hosts file and swaps it into place."""

    def render(self, lines: Iterable[HostsLine], now: Optional[datetime] = None) -> str:
        entries = [str(line) for line in lines]
        header = (
            "# DNSMasq hosts file\n"
            "# Generated by autohosts\n"
            f"# Last updated: {(now or _utcnow()).isoformat()}\n"
            f"# Total entries: {len(entries)}\n"
            "\n"
        )
        return header + "\n".join(entries) + "\n"

    def publish(self, lines: Iterable[HostsLine], path: str) -> None:
        _atomic_write_text(Path(path), self.render(lines))


# =============================================================================
# Source Registry
# =============================================================================


class SourceRegistry:
    """JSON-file-backed list of hosts sources."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.RLock()

    def list_all(self) -> List[Source]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text("utf-8"))
        except Exception as e:
            logger.warning(f"Failed to load sources file {self.path}: {e}")
            return []
        if not isinstance(raw, list):
            logger.warning(f"Sources file {self.path} does not contain a list")
            return []

        sources: List[Source] = []
        for item in raw:
            if not isinstance(item, dict) or not item.get("id") or not item.get("url"):
                logger.warning(f"Skipping malformed source entry: {item}")
                continue
            sources.append(Source.from_dict(item))
        return sources

    def list_enabled(self) -> List[Source]:
        return [s for s in self.list_all() if s.enabled]

    def get(self, source_id: str) -> Optional[Source]:
        for source in self.list_all():
            if source.id == source_id:
                return source
        return None

    def add(self, url: str, name: Optional[str] = None) -> OperationResult:
        url = (url or "").strip()
        if not url:
            return OperationResult(False, "URL is required", kind=ErrorKind.INVALID)

        with self._lock:
            sources = self.list_all()
            if any(s.url == url for s in sources):
                return OperationResult(False, "URL already exists", kind=ErrorKind.DUPLICATE)

            source = Source(id=uuid.uuid4().hex, url=url, name=(name or "").strip())
            sources.append(source)
            try:
                self._save(sources)
            except OSError as e:
                return self._save_failed("add URL", e)

        logger.info(f"Added URL: {url}")
        return OperationResult(True, "URL added successfully", source_id=source.id)

    def update(
        self,
        source_id: str,
        *,
        url: Optional[str] = None,
        name: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> OperationResult:
        changes: Dict[str, Any] = {}
        if url is not None:
            changes["url"] = url.strip()
            if not changes["url"]:
                return OperationResult(False, "URL is required", kind=ErrorKind.INVALID)
        if name is not None:
            changes["name"] = name.strip()
        if enabled is not None:
            changes["enabled"] = bool(enabled)

        with self._lock:
            sources = self.list_all()
            index = self._index_of(sources, source_id)
            if index is None:
                return OperationResult(False, "URL not found", kind=ErrorKind.NOT_FOUND)

            if "url" in changes and any(
                i != index and s.url == changes["url"] for i, s in enumerate(sources)
            ):
                return OperationResult(False, "URL already exists", kind=ErrorKind.DUPLICATE)

            sources[index] = replace(sources[index], **changes)
            try:
                self._save(sources)
            except OSError as e:
                return self._save_failed("update URL", e)

        logger.info(f"Updated URL: {source_id}")
        return OperationResult(True, "URL updated successfully", source_id=source_id)

    def remove(self, source_id: str) -> OperationResult:
        with self._lock:
            sources = self.list_all()
            index = self._index_of(sources, source_id)
            if index is None:
                return OperationResult(False, "URL not found", kind=ErrorKind.NOT_FOUND)

            removed = sources.pop(index)
            try:
                self._save(sources)
            except OSError as e:
                return self._save_failed("delete URL", e)

        logger.info(f"Deleted URL: {removed.url}")
        return OperationResult(True, "URL deleted successfully", source_id=source_id)

    def toggle(self, source_id: str) -> OperationResult:
        with self._lock:
            sources = self.list_all()
            index = self._index_of(sources, source_id)
            if index is None:
                return OperationResult(False, "URL not found", kind=ErrorKind.NOT_FOUND)

            toggled = replace(sources[index], enabled=not sources[index].enabled)
            sources[index] = toggled
            try:
                self._save(sources)
            except OSError as e:
                return self._save_failed("toggle URL", e)

        status = "enabled" if toggled.enabled else "disabled"
        logger.info(f"URL {status}: {toggled.url}")
        return OperationResult(True, f"URL {status} successfully", source_id=source_id)

    def record_success(self, source_id: str) -> OperationResult:
        return self._record(source_id, last_fetch=_utcnow(), last_error=None)

    def record_error(self, source_id: str, message: str) -> OperationResult:
        return self._record(source_id, last_error=message)

    def _record(self, source_id: str, **changes: Any) -> OperationResult:
        with self._lock:
            sources = self.list_all()
            index = self._index_of(sources, source_id)
            if index is None:
                # Removed while a pass was fetching it.
                logger.debug(f"Source {source_id} vanished before its fetch outcome was recorded")
                return OperationResult(False, "URL not found", kind=ErrorKind.NOT_FOUND)

            sources[index] = replace(sources[index], **changes)
            try:
                self._save(sources)
            except OSError as e:
                return self._save_failed("record fetch outcome", e)
        return OperationResult(True, "Fetch outcome recorded", source_id=source_id)

    def _save(self, sources: List[Source]) -> None:
        _atomic_write_text(self.path, json.dumps([s.to_dict() for s in sources], indent=2))

    def _save_failed(self, action: str, error: OSError) -> OperationResult:
        logger.error(f"Failed to save sources file {self.path}: {error}")
        return OperationResult(
            False, f"Failed to {action}: {error}", kind=classify_os_error(error)
        )

    @staticmethod
    def _index_of(sources: List[Source], source_id: str) -> Optional[int]:
        for index, source in enumerate(sources):
            if source.id == source_id:
                return index
        return None


# =============================================================================
# Settings Store
# =============================================================================


class SettingsStore:
    """YAML-file-backed manager settings. Invalid values are never committed."""

    def __init__(self, path: str, defaults: Optional[Settings] = None):
        self.path = Path(path)
        self.defaults = defaults or Settings()
        self._lock = threading.Lock()

    def load(self) -> Settings:
        if not self.path.exists():
            return self.defaults
        try:
            data = yaml.safe_load(self.path.read_text("utf-8"))
        except Exception as e:
            logger.error(f"Failed to read settings file {self.path}, using defaults: {e}")
            return self.defaults
        if data is None:
            return self.defaults
        if not isinstance(data, dict):
            logger.error(f"Settings file {self.path} is not a mapping, using defaults")
            return self.defaults

        cron_expression = str(data.get("cron_expression") or self.defaults.cron_expression)
        hosts_file_path = str(data.get("hosts_file_path") or self.defaults.hosts_file_path)
        try:
            fetch_timeout_ms = int(data.get("fetch_timeout_ms") or self.defaults.fetch_timeout_ms)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid fetch_timeout_ms: {data.get('fetch_timeout_ms')}")
            fetch_timeout_ms = self.defaults.fetch_timeout_ms

        return Settings(
            cron_expression=cron_expression,
            hosts_file_path=hosts_file_path,
            fetch_timeout_ms=fetch_timeout_ms,
        )

    def set_cron_expression(self, expression: str) -> OperationResult:
        expression = (expression or "").strip()
        error = validate_cron_expression(expression)
        if error:
            return OperationResult(
                False, f"Invalid cron expression '{expression}': {error}", kind=ErrorKind.INVALID
            )
        return self._commit("cron expression", cron_expression=expression)

    def set_hosts_file_path(self, path: str) -> OperationResult:
        path = (path or "").strip() or self.defaults.hosts_file_path
        if not os.path.isabs(path):
            return OperationResult(
                False, f"Hosts file path must be absolute: {path}", kind=ErrorKind.INVALID
            )
        return self._commit("hosts file path", hosts_file_path=path)

    def set_fetch_timeout(self, timeout_ms: Any) -> OperationResult:
        try:
            timeout_ms = int(timeout_ms)
        except (TypeError, ValueError):
            return OperationResult(
                False, f"Timeout must be an integer: {timeout_ms}", kind=ErrorKind.INVALID
            )
        if timeout_ms < MIN_FETCH_TIMEOUT_MS:
            return OperationResult(
                False,
                f"Timeout must be at least {MIN_FETCH_TIMEOUT_MS} ms",
                kind=ErrorKind.INVALID,
            )
        return self._commit("fetch timeout", fetch_timeout_ms=timeout_ms)

    def _commit(self, label: str, **changes: Any) -> OperationResult:
        with self._lock:
            settings = replace(self.load(), **changes)
            try:
                _atomic_write_text(
                    self.path, yaml.safe_dump(asdict(settings), default_flow_style=False)
                )
            except OSError as e:
                logger.error(f"Failed to save settings file {self.path}: {e}")
                return OperationResult(
                    False, f"Failed to save {label}: {e}", kind=classify_os_error(e)
                )
        logger.info(f"Updated {label}: {next(iter(changes.values()))}")
        return OperationResult(True, f"Updated {label}")


# =============================================================================
# Hosts Syncer
# =============================================================================


class HostsSyncer:
    def __init__(
        self,
        *,
        registry: SourceRegistry,
        settings_store: SettingsStore,
        fetcher: Optional[HostsFetcher] = None,
        writer: Optional[HostsFileWriter] = None,
    ):
        self.registry = registry
        self.settings_store = settings_store
        self.fetcher = fetcher or HostsFetcher()
        self.writer = writer or HostsFileWriter()
        self._pass_lock = threading.Lock()

    def run_once(
        self, timeout_override: Optional[int] = None, *, blocking: bool = True
    ) -> SyncResult:
        """Fetch every enabled source and republish the hosts file.

        Only one pass runs at a time. With blocking=False a caller that finds
        a pass in flight gets SyncInProgressError instead of waiting.
        """
        if not self._pass_lock.acquire(blocking=blocking):
            raise SyncInProgressError("A hosts fetch is already in progress")
        try:
            return self._run_pass(timeout_override)
        finally:
            self._pass_lock.release()

    def _run_pass(self, timeout_override: Optional[int]) -> SyncResult:
        logger.info("Starting hosts fetch...")
        sources = self.registry.list_enabled()
        if not sources:
            logger.info("No enabled URLs to fetch")
            return SyncResult(hosts_count=0, errors_count=0)

        settings = self.settings_store.load()
        timeout_ms = resolve_timeout_ms(timeout_override, settings.fetch_timeout_ms)

        all_hosts: List[HostsLine] = []
        errors: List[str] = []

        for source in sources:
            logger.info(f"Fetching hosts from: {source.url}")
            result = self.fetcher.fetch(source.url, timeout_ms)

            if result.ok:
                hosts = parse_hosts_content(result.text)
                all_hosts.extend(hosts)
                self.registry.record_success(source.id)
                logger.info(f"Fetched {len(hosts)} hosts from {source.url}")
                continue

            details = result.error.describe() if result.error else "unknown error"
            error_msg = f"Failed to fetch from {source.url}: {details}"
            logger.warning(error_msg)
            errors.append(error_msg)
            self.registry.record_error(source.id, details)

        if all_hosts:
            self.writer.publish(all_hosts, settings.hosts_file_path)
            logger.info(f"Successfully wrote {len(all_hosts)} hosts to {settings.hosts_file_path}")

        if errors:
            logger.warning(f"Completed with {len(errors)} errors")
        return SyncResult(hosts_count=len(all_hosts), errors_count=len(errors))

    def fetch_now(self, timeout_override: Optional[int] = None) -> OperationResult:
        """Manually triggered pass. Rejected, not queued, while another runs."""
        logger.info("Manual hosts fetch triggered...")
        try:
            result = self.run_once(timeout_override, blocking=False)
        except SyncInProgressError as e:
            logger.warning(str(e))
            return OperationResult(False, str(e), kind=ErrorKind.BUSY)
        except OSError as e:
            logger.error(f"Error in manual hosts fetch: {e}", exc_info=True)
            return OperationResult(
                False, f"Failed to fetch hosts: {e}", kind=classify_os_error(e)
            )

        if result.errors_count > 0:
            message = f"Fetched {result.hosts_count} hosts with {result.errors_count} errors"
        else:
            message = f"Successfully fetched {result.hosts_count} hosts"
        return OperationResult(True, message, hosts_count=result.hosts_count)

    def get_hosts_content(self) -> str:
        path = Path(self.settings_store.load().hosts_file_path)
        try:
            if path.exists():
                return path.read_text("utf-8")
            return "# No hosts file found"
        except OSError as e:
            logger.error(f"Error reading hosts file {path}: {e}")
            return "# Error reading hosts file"

    def get_hosts_stats(self) -> HostsFileStats:
        path = Path(self.settings_store.load().hosts_file_path)
        try:
            if not path.exists():
                return HostsFileStats(file_path=str(path), exists=False)
            stat = path.stat()
            content = path.read_text("utf-8")
        except OSError as e:
            logger.error(f"Error getting hosts stats for {path}: {e}")
            return HostsFileStats(file_path=str(path), exists=False)

        line_count = sum(
            1 for line in content.split("\n") if line.strip() and not line.startswith("#")
        )
        return HostsFileStats(
            file_path=str(path),
            exists=True,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            line_count=line_count,
        )


# =============================================================================
# Scheduler
# =============================================================================


class HostsScheduler:
    """Owns the single recurring hosts-fetch job."""

    JOB_ID = "hosts-fetch-job"

    def __init__(
        self,
        syncer: HostsSyncer,
        settings_store: SettingsStore,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.syncer = syncer
        self.settings_store = settings_store
        self._scheduler = scheduler or BackgroundScheduler(
            job_defaults={"max_instances": 1, "coalesce": True}
        )
        self._lock = threading.Lock()
        self.cron_expression: Optional[str] = None

    def register(self, cron_expression: str) -> OperationResult:
        """Install the job with this schedule, replacing any existing one.

        An invalid expression leaves the current job untouched.
        """
        cron_expression = (cron_expression or "").strip()
        error = validate_cron_expression(cron_expression)
        if error:
            logger.error(f"Refusing to schedule invalid cron expression '{cron_expression}': {error}")
            return OperationResult(
                False, f"Invalid cron expression '{cron_expression}': {error}", kind=ErrorKind.INVALID
            )

        trigger = CronTrigger.from_crontab(cron_expression)
        with self._lock:
            if self._scheduler.get_job(self.JOB_ID) is not None:
                self._scheduler.remove_job(self.JOB_ID)
            self._scheduler.add_job(
                self._run_scheduled_pass,
                trigger=trigger,
                id=self.JOB_ID,
                name=self.JOB_ID,
                max_instances=1,
                coalesce=True,
            )
            self.cron_expression = cron_expression

        logger.info(f"Registered cron job '{self.JOB_ID}' with schedule: {cron_expression}")
        return OperationResult(True, f"Scheduled hosts fetch: {cron_expression}")

    def reregister(self, cron_expression: str) -> OperationResult:
        return self.register(cron_expression)

    def update_schedule(self, cron_expression: str) -> OperationResult:
        """Persist a new cron expression, then swap the running job over to it."""
        saved = self.settings_store.set_cron_expression(cron_expression)
        if not saved.success:
            return saved
        return self.register(cron_expression)

    def jobs(self) -> list:
        return self._scheduler.get_jobs()

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    def _run_scheduled_pass(self) -> None:
        try:
            result = self.syncer.run_once()
            logger.info(
                f"Scheduled hosts fetch finished: {result.hosts_count} hosts, "
                f"{result.errors_count} errors"
            )
        except Exception as e:
            logger.error(f"Cron job execution failed: {e}", exc_info=True)


# =============================================================================
# dnsmasq Supervisor
# =============================================================================


class DnsmasqSupervisor:
    """Starts, stops and inspects the dnsmasq daemon.

    The daemon may outlive this manager, be started by something else, or exit
    on its own, so every status query goes back to the process table. A handle
    from our own spawn is only trusted after it is confirmed alive.
    """

    LABEL = "DNSMasq"

    def __init__(
        self,
        *,
        settings_store: SettingsStore,
        binary: str = DNSMASQ_BINARY,
        extra_args: Optional[List[str]] = None,
        log_path: str = DNSMASQ_LOG_PATH,
        process_name: Optional[str] = None,
        settle_seconds: float = 1.0,
        port: int = DNS_PORT,
    ):
        self.settings_store = settings_store
        self.binary = binary
        self.extra_args = list(extra_args or [])
        self.log_path = Path(log_path)
        self.process_name = process_name or os.path.basename(binary)
        self.settle_seconds = settle_seconds
        self.port = port
        self._process: Optional[subprocess.Popen] = None
        self._control_lock = threading.Lock()

    # -- status ---------------------------------------------------------------

    def get_status(self) -> ProcessStatus:
        try:
            pid = self._live_handle_pid()
            if pid is None:
                pid = self.find_daemon_pid()
            if pid is None:
                return ProcessStatus(is_running=False)
            return ProcessStatus(
                is_running=True,
                pid=pid,
                start_time=self._process_start_time(pid),
                port=self.port if self._is_port_bound() else None,
                command=self.process_name,
            )
        except Exception as e:
            logger.error(
                f"Error getting {self.LABEL} status ({classify_os_error(e).value}): {e}"
            )
            return ProcessStatus(is_running=False)

    def find_daemon_pid(self) -> Optional[int]:
        """Scan the process table for a live process whose command line names the daemon."""
        own_pid = os.getpid()
        try:
            for proc in psutil.process_iter(["pid", "cmdline", "status"]):
                info = proc.info
                if info["pid"] == own_pid or info.get("status") == psutil.STATUS_ZOMBIE:
                    continue
                cmdline = " ".join(info.get("cmdline") or [])
                if self.process_name in cmdline:
                    return info["pid"]
        except psutil.Error as e:
            logger.error(
                f"Error scanning for {self.LABEL} ({classify_os_error(e).value}): {e}"
            )
        return None

    def _live_handle_pid(self) -> Optional[int]:
        if self._process is None:
            return None
        pid = self._process.pid
        if self._process.poll() is None and _pid_alive(pid):
            return pid
        logger.debug(f"Discarding stale {self.LABEL} handle (PID: {pid})")
        self._process = None
        return None

    def _process_start_time(self, pid: int) -> Optional[datetime]:
        try:
            return datetime.fromtimestamp(psutil.Process(pid).create_time(), tz=timezone.utc)
        except psutil.Error as e:
            logger.debug(f"Cannot read start time of PID {pid}: {e}")
            return None

    def _is_port_bound(self) -> bool:
        try:
            for kind in ("tcp", "udp"):
                for conn in psutil.net_connections(kind=kind):
                    if conn.laddr and conn.laddr.port == self.port:
                        return True
        except (psutil.Error, OSError) as e:
            logger.debug(f"Cannot inspect socket tables ({classify_os_error(e).value}): {e}")
        return False

    # -- control --------------------------------------------------------------

    def start(self) -> OperationResult:
        return self._single_flight(self._start)

    def stop(self) -> OperationResult:
        return self._single_flight(self._stop)

    def restart(self) -> OperationResult:
        return self._single_flight(self._restart)

    def _single_flight(self, operation) -> OperationResult:
        if not self._control_lock.acquire(blocking=False):
            return OperationResult(
                False, f"Another {self.LABEL} control operation is in progress", kind=ErrorKind.BUSY
            )
        try:
            return operation()
        finally:
            self._control_lock.release()

    def _start(self) -> OperationResult:
        status = self.get_status()
        if status.is_running:
            return OperationResult(
                False,
                f"{self.LABEL} is already running",
                kind=ErrorKind.ALREADY_RUNNING,
                pid=status.pid,
            )

        hosts_file = self.settings_store.load().hosts_file_path
        command = [self.binary, *self.extra_args, f"--addn-hosts={hosts_file}"]
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "ab") as log_file:
                self._process = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                )
        except OSError as e:
            self._process = None
            logger.error(f"Error starting {self.LABEL}: {e}")
            return OperationResult(
                False, f"Failed to start {self.LABEL}: {e}", kind=classify_os_error(e)
            )
        logger.info(f"Spawned {self.LABEL} (PID: {self._process.pid}): {' '.join(command)}")

        time.sleep(self.settle_seconds)
        new_status = self.get_status()
        if new_status.is_running:
            logger.info(f"{self.LABEL} started with PID: {new_status.pid}")
            return OperationResult(
                True, f"{self.LABEL} started successfully", pid=new_status.pid
            )

        self._process = None
        logger.error(f"{self.LABEL} exited right after launch, see {self.log_path}")
        return OperationResult(
            False,
            f"{self.LABEL} failed to start - process not found after launch",
            kind=ErrorKind.NOT_FOUND,
        )

    def _stop(self) -> OperationResult:
        status = self.get_status()
        if not status.is_running or status.pid is None:
            return OperationResult(False, f"{self.LABEL} is not running", kind=ErrorKind.NOT_RUNNING)
        pid = status.pid

        failure = self._send_signal(pid, force=False)
        if failure:
            return failure

        time.sleep(self.settle_seconds)
        if not self.get_status().is_running:
            self._process = None
            logger.info(f"{self.LABEL} stopped (PID: {pid})")
            return OperationResult(True, f"{self.LABEL} stopped successfully", pid=pid)

        logger.warning(f"{self.LABEL} (PID: {pid}) ignored SIGTERM, sending SIGKILL")
        failure = self._send_signal(pid, force=True)
        if failure:
            return failure
        self._wait_for_exit(pid)
        self._process = None

        if self.get_status().is_running:
            logger.error(f"{self.LABEL} still running after SIGKILL (PID: {pid})")
            return OperationResult(
                False, f"Failed to stop {self.LABEL}: still running", kind=ErrorKind.UNKNOWN, pid=pid
            )
        logger.info(f"{self.LABEL} force stopped (PID: {pid})")
        return OperationResult(True, f"{self.LABEL} force stopped", pid=pid)

    def _restart(self) -> OperationResult:
        stop_result = self._stop()
        if not stop_result.success and stop_result.kind is not ErrorKind.NOT_RUNNING:
            return OperationResult(
                False, f"Failed to stop {self.LABEL}: {stop_result.message}", kind=stop_result.kind
            )

        time.sleep(self.settle_seconds)
        return self._start()

    def _send_signal(self, pid: int, *, force: bool) -> Optional[OperationResult]:
        """Signal pid; returns a failure result, or None if the signal landed or pid is gone."""
        try:
            if self._process is not None and self._process.pid == pid:
                target = self._process
            else:
                target = psutil.Process(pid)
            if force:
                target.kill()
            else:
                target.terminate()
        except (psutil.Error, OSError) as e:
            kind = classify_os_error(e)
            if kind is ErrorKind.NOT_FOUND:
                return None
            logger.error(f"Error signalling {self.LABEL} (PID: {pid}): {e}")
            return OperationResult(
                False, f"Failed to stop {self.LABEL}: {e}", kind=kind, pid=pid
            )
        return None

    def _wait_for_exit(self, pid: int) -> None:
        try:
            if self._process is not None and self._process.pid == pid:
                self._process.wait(timeout=self.settle_seconds)
            else:
                psutil.Process(pid).wait(timeout=self.settle_seconds)
        except (psutil.NoSuchProcess, psutil.TimeoutExpired, subprocess.TimeoutExpired):
            pass

    # -- logs -----------------------------------------------------------------

    def get_logs(self) -> str:
        try:
            if self.log_path.exists():
                return self.log_path.read_text("utf-8", errors="replace")
            return "No logs available"
        except OSError as e:
            logger.error(f"Error reading logs: {e}")
            return "Error reading logs"


def _pid_alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if SYNC_MODE not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")

    cron_error = validate_cron_expression(DEFAULT_CRON_EXPRESSION)
    if cron_error:
        errors.append(f"Invalid HOSTS_FETCH_CRON '{DEFAULT_CRON_EXPRESSION}': {cron_error}")

    if DEFAULT_FETCH_TIMEOUT_MS < MIN_FETCH_TIMEOUT_MS:
        errors.append(f"HOSTS_FETCH_TIMEOUT_MS must be at least {MIN_FETCH_TIMEOUT_MS}")

    if not os.path.isabs(DEFAULT_HOSTS_FILE):
        errors.append(f"DNSMASQ_HOSTS must be an absolute path: {DEFAULT_HOSTS_FILE}")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    logger.info(f"autohosts: remote hosts lists -> {DNSMASQ_BINARY}")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    settings_store = SettingsStore(SETTINGS_PATH)
    registry = SourceRegistry(SOURCES_PATH)
    syncer = HostsSyncer(registry=registry, settings_store=settings_store)

    settings = settings_store.load()
    logger.info(f"Settings file: {SETTINGS_PATH}")
    logger.info(f"Sources file: {SOURCES_PATH} ({len(registry.list_enabled())} enabled)")
    logger.info(f"Hosts file: {settings.hosts_file_path}")
    logger.info(f"Sync mode: {SYNC_MODE}")

    try:
        if SYNC_MODE == "once":
            result = syncer.run_once()
            logger.info(f"Fetched {result.hosts_count} hosts with {result.errors_count} errors")
            return

        scheduler = HostsScheduler(syncer, settings_store)
        registered = scheduler.register(settings.cron_expression)
        if not registered.success:
            logger.error(registered.message)
            sys.exit(1)
        scheduler.start()

        # Publish before the daemon reads the file for the first time.
        try:
            syncer.run_once()
        except OSError as e:
            logger.error(f"Initial hosts fetch failed: {e}", exc_info=True)

        supervisor = DnsmasqSupervisor(
            settings_store=settings_store,
            binary=DNSMASQ_BINARY,
            extra_args=shlex.split(DNSMASQ_ARGS),
            log_path=DNSMASQ_LOG_PATH,
        )
        if DNSMASQ_AUTOSTART:
            started = supervisor.start()
            log = logger.info if started.success else logger.warning
            log(started.message)

        last_mtime = get_config_file_mtime(SETTINGS_PATH)
        try:
            while True:
                time.sleep(max(5, SETTINGS_POLL_SECONDS))

                current_mtime = get_config_file_mtime(SETTINGS_PATH)
                if current_mtime == last_mtime:
                    continue
                last_mtime = current_mtime
                logger.info(f"Settings change detected in: {Path(SETTINGS_PATH).name}")

                cron_expression = settings_store.load().cron_expression
                if cron_expression != scheduler.cron_expression:
                    result = scheduler.reregister(cron_expression)
                    if not result.success:
                        logger.warning(
                            f"Continuing with previous schedule: {scheduler.cron_expression}"
                        )
        finally:
            scheduler.shutdown(wait=False)

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
