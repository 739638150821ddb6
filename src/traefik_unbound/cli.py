#!/usr/bin/env python3
"""traefik-unbound - Traefik routers to Unbound local-data

Collects the hostnames routed by one or more Traefik instances and writes them
into an Unbound configuration fragment as local-data overrides pointing at the
Traefik host. The fragment is only touched when its content changes; a backup
is taken first, the result is checked with unbound-checkconf and Unbound is
restarted, or the previous file is restored if the check fails.

One invocation performs one sync. Run it from a systemd timer or cron.

Options (flags override environment variables):

    -u, --urls             TRAEFIK_URLS           Comma separated Traefik base URLs
                                                  (flag may be repeated)
    --config               TRAEFIK_CONFIG_PATH    YAML file (or directory of *.yaml)
                                                  listing endpoints. Example:
                                                    endpoints:
                                                      - name: "core"
                                                        url: "http://traefik:8080"
                                                      - url: "https://edge:8443"
                                                        verify_tls: false
                                                        username: "admin"
                                                        password: "secret"
    -p, --path             UNBOUND_SERVICES_FILE  Fragment to manage
                                                  (default: traefik-services.conf)
    -c, --checkconf        UNBOUND_CHECKCONF      Checker executable
                                                  (default: unbound-checkconf)
    --service              UNBOUND_SERVICE        systemd unit to restart (default: unbound)
    --timeout              HTTP_TIMEOUT_SECONDS   Traefik API timeout (default: 5)
    --log-level            LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

Exit status is 0 when the fragment is unchanged, applied, or rolled back after a
failed check, and 1 on any fatal error.
"""

from __future__ import annotations

import argparse
import hashlib
import ipaddress
import logging
import os
import re
import shutil
import socket
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import requests
import yaml
from requests.auth import HTTPBasicAuth

logger = logging.getLogger(__name__)

DEFAULT_SERVICES_FILE = "traefik-services.conf"
DEFAULT_CHECKCONF = "unbound-checkconf"
DEFAULT_SERVICE = "unbound"
DEFAULT_TIMEOUT_SECONDS = 5.0
BACKUP_SUFFIX = ".bak"
SERVICES_FILE_MODE = 0o664

HEADER = "# The contents of this file will be overriden to add traefik endpoints dynamically"

# =============================================================================
# Errors
# =============================================================================


class SyncError(Exception):
    """Fatal condition that aborts the sync."""


class ConfigError(SyncError):
    """Invalid or missing configuration."""


class ResolveError(SyncError):
    """A Traefik endpoint could not be resolved to an IPv4 address."""


class UpdateError(SyncError):
    """The services file could not be created, read, backed up or written."""


class RollbackError(UpdateError):
    """The backup could not be restored over the services file."""


class ReloadError(SyncError):
    """The resolver service did not restart after a validated update."""


# =============================================================================
# Data Classes
# =============================================================================


class RouterKind(Enum):
    """Traefik router families and their API paths."""

    HTTP = "http"
    TCP = "tcp"

    @property
    def api_path(self) -> str:
        return f"/api/{self.value}/routers"


class UpdateOutcome(Enum):
    """Terminal state of one services file update."""

    UNCHANGED = "unchanged"
    APPLIED = "applied"
    ROLLED_BACK = "rolled-back"


@dataclass(frozen=True)
class ProxyEndpoint:
    """A Traefik instance whose routers are exported."""

    url: str
    name: str = ""
    verify_tls: bool = True
    username: str = ""
    password: str = ""

    @property
    def label(self) -> str:
        return self.name or self.url


@dataclass(frozen=True)
class RenderedConfig:
    """Services file content together with its SHA-256 fingerprint."""

    content: str
    fingerprint: str


@dataclass(frozen=True)
class SyncConfig:
    """Runtime configuration, built once by load_config."""

    endpoints: Tuple[ProxyEndpoint, ...]
    services_file: str = DEFAULT_SERVICES_FILE
    checkconf: str = DEFAULT_CHECKCONF
    service: str = DEFAULT_SERVICE
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    log_level: str = "INFO"


# =============================================================================
# Rule Extraction
# =============================================================================

# Host(`name`) for HTTP routers, HostSNI(`name`) for TCP routers.
HOST_RULE_RE = re.compile(r"Host(?:SNI)?\(`(?P<host>[^/`]+)`")


def extract_hostname(rule: Any) -> Optional[str]:
    """Return the hostname of the first Host/HostSNI matcher in a rule, if any."""
    if not isinstance(rule, str):
        return None
    match = HOST_RULE_RE.search(rule)
    if match is None:
        return None
    return match.group("host")


# =============================================================================
# Traefik Router Fetching
# =============================================================================


class TraefikRouterFetcher:
    """Reads router rules from the Traefik API."""

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self._timeout = timeout_seconds

    def _session(self, endpoint: ProxyEndpoint) -> requests.Session:
        session = requests.Session()
        if endpoint.username and endpoint.password:
            session.auth = HTTPBasicAuth(endpoint.username, endpoint.password)
        return session

    def get_rules(self, endpoint: ProxyEndpoint, kind: RouterKind) -> List[str]:
        """Fetch the rules of one router kind.

        Failures are logged and yield an empty list, so one unreachable
        instance or router kind never stops the others from being exported.
        """
        routers_url = endpoint.url.rstrip("/") + kind.api_path
        try:
            response = self._session(endpoint).get(
                routers_url,
                timeout=self._timeout,
                verify=endpoint.verify_tls,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Could not retrieve routers from \"{routers_url}\": {e}")
            return []

        if response.status_code >= 400:
            logger.error(
                f"Response from {routers_url} not successful. "
                f"Status: {response.status_code} {response.reason}"
            )
            return []

        try:
            routers = response.json()
        except (ValueError, requests.exceptions.RequestException) as e:
            logger.error(f"Error decoding Traefik response body from {routers_url}: {e}")
            return []

        if not isinstance(routers, list):
            logger.error(
                f"Unexpected response format from {routers_url}: "
                f"expected list, got {type(routers).__name__}"
            )
            return []

        rules: List[str] = []
        for router in routers:
            rule = router.get("rule") if isinstance(router, dict) else None
            if not isinstance(rule, str):
                logger.debug(f"Skipping router entry without rule: {router}")
                continue
            rules.append(rule)
        return rules

    def get_all_rules(self, endpoint: ProxyEndpoint) -> List[str]:
        """HTTP router rules followed by TCP router rules."""
        rules: List[str] = []
        for kind in RouterKind:
            rules.extend(self.get_rules(endpoint, kind))
        return rules


# =============================================================================
# Address Resolution
# =============================================================================


def resolve_ipv4(url: str) -> str:
    """Resolve the host of a Traefik URL to a dotted-quad IPv4 address.

    The first address returned by the lookup is used. Raises ResolveError when
    the host cannot be resolved or its first address has no IPv4 form.
    """
    try:
        host = urlsplit(url).hostname
    except ValueError as e:
        raise ResolveError(f"Invalid Traefik URL {url}: {e}") from e
    if not host:
        raise ResolveError(f"No host found in Traefik URL {url}")

    try:
        infos = socket.getaddrinfo(host, None)
    except (socket.gaierror, UnicodeError) as e:
        raise ResolveError(f"Could not resolve host {host}: {e}") from e
    if not infos:
        raise ResolveError(f"No IPs found for host {host}")

    raw = infos[0][4][0]
    try:
        address = ipaddress.ip_address(raw.split("%", 1)[0])
    except ValueError as e:
        raise ResolveError(f"Invalid address {raw} returned for host {host}") from e

    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is None:
            raise ResolveError(
                f"Could not convert IP {address} to IPv4 representation from host {host}"
            )
        address = address.ipv4_mapped
    return str(address)


# =============================================================================
# Host Collection
# =============================================================================


def collect_hosts(
    endpoint: ProxyEndpoint,
    fetcher: TraefikRouterFetcher,
    resolver: Callable[[str], str] = resolve_ipv4,
) -> Dict[str, str]:
    """Map every hostname routed by one Traefik instance to its address."""
    rules = fetcher.get_all_rules(endpoint)
    ip = resolver(endpoint.url)

    hosts: Dict[str, str] = {}
    for rule in rules:
        hostname = extract_hostname(rule)
        if hostname is None:
            logger.debug(f"No host matcher in rule {rule!r} from {endpoint.label}")
            continue
        hosts[hostname] = ip
    return hosts


def merge_hosts(mappings: Iterable[Mapping[str, str]]) -> Dict[str, str]:
    """Merge host mappings in order; later mappings win on shared hostnames."""
    merged: Dict[str, str] = {}
    for mapping in mappings:
        for hostname, ip in mapping.items():
            previous = merged.get(hostname)
            if previous is not None and previous != ip:
                logger.warning(
                    f"Host '{hostname}' is routed by several Traefik instances; "
                    f"using {ip} instead of {previous}"
                )
            merged[hostname] = ip
    return merged


# =============================================================================
# Rendering
# =============================================================================


def fingerprint_text(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def render_config(hosts: Mapping[str, str]) -> RenderedConfig:
    """Render the Unbound local-data fragment for a hostname -> IPv4 mapping."""
    lines = [HEADER]
    hostnames = sorted(hosts)
    if hostnames:
        lines.append(f"# Endpoints extracted from {hosts[hostnames[0]]}")
    for hostname in hostnames:
        lines.append(f'local-data: "{hostname} A {hosts[hostname]}"')

    content = "".join(f"{line}\n" for line in lines)
    return RenderedConfig(content=content, fingerprint=fingerprint_text(content))


# =============================================================================
# Validation and Service Reload
# =============================================================================


def _output_of(result: subprocess.CompletedProcess) -> str:
    return " ".join(part.strip() for part in (result.stdout, result.stderr) if part and part.strip())


class ConfigValidator(ABC):
    """Checks the resolver configuration after the fragment was written."""

    @abstractmethod
    def validate(self) -> bool:
        """Return True when the written configuration is valid."""
        pass


class ServiceManager(ABC):
    """Makes the resolver pick up a new configuration."""

    @abstractmethod
    def reload(self) -> None:
        """Reload the service, raising ReloadError on failure."""
        pass


class UnboundCheckconf(ConfigValidator):
    """Runs unbound-checkconf against the default Unbound configuration."""

    def __init__(self, executable: str = DEFAULT_CHECKCONF):
        self._executable = executable

    def validate(self) -> bool:
        try:
            result = subprocess.run(
                [self._executable], capture_output=True, text=True, check=False
            )
        except OSError as e:
            logger.error(f"Error checking configuration with {self._executable}: {e}")
            return False

        if result.returncode != 0:
            logger.error(
                f"Error checking configuration. {self._executable} exited with "
                f"status {result.returncode}: {_output_of(result)}"
            )
            return False
        return True


class SystemctlService(ServiceManager):
    """Restarts a systemd unit."""

    def __init__(self, unit: str = DEFAULT_SERVICE, systemctl: str = "systemctl"):
        self._unit = unit
        self._systemctl = systemctl

    def reload(self) -> None:
        command = [self._systemctl, "restart", self._unit]
        try:
            result = subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as e:
            raise ReloadError(f"Error restarting {self._unit}: {e}") from e

        if result.returncode != 0:
            raise ReloadError(f"Error restarting {self._unit}. {_output_of(result)}")
        logger.info(f"Restarted {self._unit}")


# =============================================================================
# Safe File Update
# =============================================================================


class SafeFileUpdater:
    """Replaces the services file with backup, validation and rollback.

    apply() walks: ensure-exists, compare, backup, write, validate, then
    reload or roll back. Fatal failures raise UpdateError / ReloadError; a
    failed validation is rolled back and reported as ROLLED_BACK.
    """

    def __init__(
        self,
        path: str,
        validator: ConfigValidator,
        service: ServiceManager,
        *,
        backup_suffix: str = BACKUP_SUFFIX,
        file_mode: int = SERVICES_FILE_MODE,
    ):
        self.path = Path(path)
        self.backup_path = Path(str(self.path) + backup_suffix)
        self.validator = validator
        self.service = service
        self.file_mode = file_mode

    def ensure_exists(self) -> bool:
        """Create the services file if missing. Returns True if it was created."""
        if self.path.exists():
            return False
        try:
            self.path.touch(mode=self.file_mode, exist_ok=False)
            os.chmod(self.path, self.file_mode)
        except OSError as e:
            raise UpdateError(f"Error creating file {self.path}. {e}") from e
        logger.info(f"Created {self.path}")
        return True

    def current_fingerprint(self) -> str:
        digest = hashlib.sha256()
        try:
            with open(self.path, "rb") as f:
                for chunk in iter(lambda: f.read(65536), b""):
                    digest.update(chunk)
        except OSError as e:
            raise UpdateError(f"Error reading {self.path} to calculate SHA256. {e}") from e
        return digest.hexdigest()

    def backup(self) -> None:
        try:
            shutil.copyfile(self.path, self.backup_path)
        except OSError as e:
            raise UpdateError(f"Error backing up {self.path}. {e}") from e
        logger.debug(f"Backed up {self.path} to {self.backup_path}")

    def write(self, content: str) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(content)

    def rollback(self, *, has_backup: bool) -> None:
        """Restore the content the file had before this update."""
        try:
            if has_backup:
                shutil.copyfile(self.backup_path, self.path)
            else:
                # Created during this update, so its previous content was empty.
                self.write("")
        except OSError as e:
            raise RollbackError(f"Error restoring backup {self.backup_path}. {e}") from e
        logger.warning(f"Rolled back {self.path}")

    def apply(self, rendered: RenderedConfig) -> UpdateOutcome:
        created = self.ensure_exists()

        if self.current_fingerprint() == rendered.fingerprint:
            logger.info(f"{self.path} is up to date")
            return UpdateOutcome.UNCHANGED

        has_backup = not created
        if has_backup:
            self.backup()

        try:
            self.write(rendered.content)
        except OSError as e:
            self.rollback(has_backup=has_backup)
            raise UpdateError(f"Error writing contents to file {self.path}. {e}") from e
        logger.info(f"Wrote {self.path}")

        if not self.validator.validate():
            logger.warning(f"Configuration check failed; restoring previous {self.path}")
            self.rollback(has_backup=has_backup)
            return UpdateOutcome.ROLLED_BACK

        self.service.reload()
        return UpdateOutcome.APPLIED


# =============================================================================
# Configuration
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _split_urls(values: Iterable[str]) -> List[str]:
    urls: List[str] = []
    for value in values:
        urls.extend(u.strip() for u in value.split(",") if u.strip())
    return urls


def find_config_files(config_path: str) -> List[str]:
    """Return config_path itself, or the *.yaml files of a directory in name order."""
    path = Path(config_path)
    if path.is_file():
        return [str(path)]
    if path.is_dir():
        return [str(f) for f in sorted(path.glob("*.yaml")) if not f.name.endswith(".template")]
    return []


def load_endpoints_file(config_file: str) -> List[ProxyEndpoint]:
    """Read the endpoints list of one YAML file, skipping invalid entries."""
    try:
        with open(config_file, "r") as f:
            config_data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_file}: {e}")
        return []

    if not isinstance(config_data, dict) or "endpoints" not in config_data:
        logger.warning(f"Config file {config_file} missing 'endpoints' key")
        return []

    endpoints: List[ProxyEndpoint] = []
    for item in config_data["endpoints"] or []:
        if isinstance(item, str):
            item = {"url": item}
        if not isinstance(item, dict):
            logger.warning(f"Skipping invalid endpoint entry in {config_file}: {item!r}")
            continue
        url = str(item.get("url") or "").strip()
        if not url:
            logger.warning(f"Skipping endpoint without url in {config_file}: {item!r}")
            continue
        endpoints.append(
            ProxyEndpoint(
                url=url,
                name=str(item.get("name") or "").strip(),
                verify_tls=_parse_bool(item.get("verify_tls"), default=True),
                username=str(item.get("username") or "").strip(),
                password=str(item.get("password") or "").strip(),
            )
        )
    return endpoints


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="traefik-unbound",
        description="Export Traefik router hostnames as Unbound local-data records.",
    )
    parser.add_argument(
        "-u",
        "--urls",
        action="append",
        default=None,
        help='Comma separated list of Traefik URLs, e.g. "https://traefik.io,https://localhost"',
    )
    parser.add_argument("--config", help="YAML file or directory listing Traefik endpoints")
    parser.add_argument("-p", "--path", help="Path of the file where service hosts are saved")
    parser.add_argument("-c", "--checkconf", help="Path of the unbound-checkconf executable")
    parser.add_argument("--service", help="systemd unit restarted after an update")
    parser.add_argument("--timeout", type=float, help="Traefik API timeout in seconds")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser


def load_config(
    argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None
) -> SyncConfig:
    """Build the SyncConfig from command line arguments and environment variables."""
    env = os.environ if environ is None else environ
    args = build_parser().parse_args(argv)

    endpoints: List[ProxyEndpoint] = []
    config_path = args.config or env.get("TRAEFIK_CONFIG_PATH", "")
    if config_path:
        config_files = find_config_files(config_path)
        if not config_files:
            raise ConfigError(f"No endpoint config found at {config_path}")
        for config_file in config_files:
            endpoints.extend(load_endpoints_file(config_file))

    raw_urls = args.urls if args.urls is not None else [env.get("TRAEFIK_URLS", "")]
    endpoints.extend(ProxyEndpoint(url=url) for url in _split_urls(raw_urls))

    if not endpoints:
        raise ConfigError(
            "At least one Traefik endpoint is required (set -u/TRAEFIK_URLS or --config/TRAEFIK_CONFIG_PATH)"
        )

    timeout = args.timeout
    if timeout is None:
        raw_timeout = env.get("HTTP_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))
        try:
            timeout = float(raw_timeout)
        except ValueError as e:
            raise ConfigError(f"Invalid HTTP_TIMEOUT_SECONDS: {raw_timeout}") from e
    if timeout <= 0:
        raise ConfigError(f"Timeout must be positive, got {timeout}")

    return SyncConfig(
        endpoints=tuple(endpoints),
        services_file=args.path or env.get("UNBOUND_SERVICES_FILE", DEFAULT_SERVICES_FILE),
        checkconf=args.checkconf or env.get("UNBOUND_CHECKCONF", DEFAULT_CHECKCONF),
        service=args.service or env.get("UNBOUND_SERVICE", DEFAULT_SERVICE),
        timeout_seconds=timeout,
        log_level=(args.log_level or env.get("LOG_LEVEL", "INFO")).upper(),
    )


# =============================================================================
# Core Syncer
# =============================================================================


class UnboundSyncer:
    def __init__(
        self,
        *,
        config: SyncConfig,
        fetcher: TraefikRouterFetcher,
        updater: SafeFileUpdater,
        resolver: Callable[[str], str] = resolve_ipv4,
    ):
        self.config = config
        self.fetcher = fetcher
        self.updater = updater
        self.resolver = resolver

    def collect(self) -> Dict[str, str]:
        mappings: List[Dict[str, str]] = []
        for endpoint in self.config.endpoints:
            hosts = collect_hosts(endpoint, self.fetcher, self.resolver)
            logger.info(f"Traefik endpoint '{endpoint.label}': {len(hosts)} host(s)")
            mappings.append(hosts)
        return merge_hosts(mappings)

    def sync_once(self) -> UpdateOutcome:
        hosts = self.collect()
        rendered = render_config(hosts)
        outcome = self.updater.apply(rendered)
        logger.info(f"Sync finished: {outcome.value} ({len(hosts)} host(s))")
        return outcome


# =============================================================================
# Main
# =============================================================================


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    try:
        config = load_config(argv)
    except ConfigError as e:
        setup_logging("INFO")
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    setup_logging(config.log_level)
    logger.info(f"traefik-unbound: {len(config.endpoints)} endpoint(s) -> {config.services_file}")

    syncer = UnboundSyncer(
        config=config,
        fetcher=TraefikRouterFetcher(config.timeout_seconds),
        updater=SafeFileUpdater(
            config.services_file,
            UnboundCheckconf(config.checkconf),
            SystemctlService(config.service),
        ),
    )

    try:
        syncer.sync_once()
    except SyncError as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
