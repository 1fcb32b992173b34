from __future__ import annotations

"""
Core update checks.

Best-effort by contract: every failure becomes UpdateStatus.CHECK_FAILED and
nothing is raised to the caller, so a check can never block or fail startup.
A release that needs a newer host than the one detected is reported as
INCOMPATIBLE_HOST, never as available.
"""

import logging
import re
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from urllib.parse import urlparse

import requests

from openasphalte.core.config.models import RELEASES_URL
from openasphalte.core.errors import ModuleManagerError, NetworkError, ParseError
from openasphalte.core.modules.models import (
    CatalogFetchResult,
    CoreRelease,
    ModuleDescriptor,
    ModuleUpdateInfo,
    UpdateCheckResult,
    UpdateStatus,
)
from openasphalte.core.modules.versions import is_newer, parse_version, try_parse_version

logger = logging.getLogger(__name__)

_MIN_HOST_PATTERNS = [
    re.compile(r"min(?:Host|AutoCAD)(?:Version)?\s*[:=]\s*(\d{4}(?:\.\d+){0,2})", re.IGNORECASE),
    re.compile(r"(?:requires\s+)?AutoCAD\s+(\d{4})\+?", re.IGNORECASE),
]

ALLOWED_UPDATE_HOSTS = ("github.com", "gitlab.com", "bitbucket.org")


def is_valid_update_url(url: object, allowed_hosts: Iterable[str] = ALLOWED_UPDATE_HOSTS) -> bool:
    """HTTPS on an allowed host or one of its subdomains."""
    try:
        parsed = urlparse(str(url or "").strip())
        host = (parsed.hostname or "").lower()
    except ValueError:
        return False
    if parsed.scheme != "https" or not host:
        return False
    return any(host == h or host.endswith("." + h) for h in (a.lower() for a in allowed_hosts))


def extract_min_host_version(release: Dict[str, Any]) -> Optional[str]:
    explicit = release.get("min_host_version") or release.get("minHostVersion")
    if explicit and try_parse_version(explicit):
        return str(parse_version(explicit))
    body = str(release.get("body") or "")
    for pat in _MIN_HOST_PATTERNS:
        m = pat.search(body)
        if m:
            return str(parse_version(m.group(1)))
    return None


def _asset_url(release: Dict[str, Any]) -> str:
    assets = [a for a in (release.get("assets") or []) if isinstance(a, dict)]
    for a in assets:
        url = str(a.get("browser_download_url") or "")
        if url.lower().endswith((".zip", ".msi", ".exe")):
            return url
    if assets:
        return str(assets[0].get("browser_download_url") or "")
    return ""


class BackgroundCheck:
    """Handle for a check running on a daemon thread."""

    def __init__(self, target: Callable[[], UpdateCheckResult], callback: Callable[[UpdateCheckResult], None]):
        self._cancel = threading.Event()
        self._callback = callback
        self._target = target
        self.result: Optional[UpdateCheckResult] = None
        self._thread = threading.Thread(target=self._run, name="openasphalte-update-check", daemon=True)

    def start(self) -> "BackgroundCheck":
        self._thread.start()
        return self

    def _run(self) -> None:
        result = self._target()
        self.result = result
        if self._cancel.is_set():
            logger.debug("Update check finished after cancellation; result discarded")
            return
        try:
            self._callback(result)
        except Exception as e:
            logger.error("Update check callback failed: %s", e)

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def join(self, timeout: Optional[float] = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()


class UpdateChecker:
    def __init__(
        self,
        *,
        current_version: str,
        host_version: str = "",
        releases_url: str = RELEASES_URL,
        session: Optional[requests.Session] = None,
        timeout_seconds: float = 10.0,
        user_agent: str = "OpenAsphalte-Plugin/1.0",
        allowed_hosts: Iterable[str] = ALLOWED_UPDATE_HOSTS,
    ):
        self.current_version = str(current_version)
        self.host_version = str(host_version or "")
        self.releases_url = releases_url
        self.session = session or requests.Session()
        self.timeout_seconds = float(timeout_seconds)
        self.user_agent = user_agent
        self.allowed_hosts = tuple(allowed_hosts)

    # ---- public API ----
    def check(self) -> UpdateCheckResult:
        try:
            release = self._fetch_release()
            tag = str(release.get("tag_name") or "").strip()
            if not tag:
                raise ParseError("Release has no tag.", url=self.releases_url)
            return self.evaluate(
                latest=tag,
                min_host=extract_min_host_version(release),
                release_url=str(release.get("html_url") or ""),
                download_url=_asset_url(release),
                release_notes=str(release.get("body") or ""),
            )
        except ModuleManagerError as e:
            logger.warning("Update check failed: %s", e.user_message)
            return self._failed(e.user_message)
        except Exception as e:
            logger.warning("Update check failed: %s", e)
            return self._failed(str(e) or e.__class__.__name__)

    def check_catalog(self, core: Optional[CoreRelease]) -> UpdateCheckResult:
        if core is None:
            return self._failed("Catalog has no core release entry.")
        return self.evaluate(
            latest=core.latest,
            min_host=core.min_host_version,
            download_url=core.download_uri,
            release_notes=core.release_notes,
        )

    def evaluate(
        self,
        *,
        latest: str,
        min_host: Optional[str] = None,
        release_url: str = "",
        download_url: str = "",
        release_notes: str = "",
    ) -> UpdateCheckResult:
        current = try_parse_version(self.current_version)
        newest = try_parse_version(latest)
        if current is None:
            return self._failed(f"Installed version is not a valid version: {self.current_version!r}")
        if newest is None:
            return self._failed(f"Release tag is not a valid version: {latest!r}")

        release_url = self._trusted(release_url)
        download_url = self._trusted(download_url) or release_url
        common = {
            "current_version": str(current),
            "latest_version": str(newest),
            "actual_host_version": self.host_version,
            "release_url": release_url,
            "download_url": download_url,
            "release_notes": release_notes,
        }
        host = try_parse_version(self.host_version) if self.host_version else None
        required = try_parse_version(min_host) if min_host else None
        if required is not None and host is not None and required > host:
            logger.info("Release %s requires host %s (detected %s)", newest, required, host)
            return UpdateCheckResult(
                status=UpdateStatus.INCOMPATIBLE_HOST,
                required_host_version=str(required),
                reason=f"Requires host version {required}.",
                **common,
            )
        if newest > current:
            logger.info("Update available: %s -> %s", current, newest)
            return UpdateCheckResult(
                status=UpdateStatus.UPDATE_AVAILABLE,
                required_host_version=str(required) if required else "",
                **common,
            )
        return UpdateCheckResult(status=UpdateStatus.UP_TO_DATE, **common)

    def start_background(self, callback: Callable[[UpdateCheckResult], None]) -> BackgroundCheck:
        return BackgroundCheck(self.check, callback).start()

    # ---- internals ----
    def _trusted(self, url: str) -> str:
        if not url or is_valid_update_url(url, self.allowed_hosts):
            return url
        logger.warning("Ignoring update link outside the allowed hosts: %s", url)
        return ""

    def _failed(self, reason: str) -> UpdateCheckResult:
        return UpdateCheckResult(
            status=UpdateStatus.CHECK_FAILED,
            current_version=self.current_version,
            actual_host_version=self.host_version,
            reason=reason,
        )

    def _fetch_release(self) -> Dict[str, Any]:
        headers = {"User-Agent": self.user_agent, "Accept": "application/vnd.github+json"}
        try:
            r = self.session.get(self.releases_url, timeout=self.timeout_seconds, headers=headers)
        except requests.Timeout as e:
            raise NetworkError("Timed out contacting the release server.", url=self.releases_url) from e
        except requests.RequestException as e:
            raise NetworkError(f"Unable to contact the release server: {e}", url=self.releases_url) from e
        if r.status_code == 404:
            raise NetworkError("No published release found (404).", url=self.releases_url, status=404)
        if r.status_code == 403:
            raise NetworkError("Release server refused the request (403, rate limit?).", url=self.releases_url, status=403)
        if r.status_code >= 400:
            raise NetworkError(f"Release server returned HTTP {r.status_code}.", url=self.releases_url, status=r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise ParseError(f"Release feed is not valid JSON: {e}", url=self.releases_url) from e
        if not isinstance(data, dict):
            raise ParseError("Release feed is not an object.", url=self.releases_url)
        return data


def list_module_updates(
    catalog: Union[CatalogFetchResult, List[ModuleDescriptor]],
    registry,
    *,
    host_version: str = "",
) -> List[ModuleUpdateInfo]:
    """Newer catalog versions of installed modules, then modules not installed yet."""
    descriptors = catalog.modules if isinstance(catalog, CatalogFetchResult) else list(catalog)
    host = try_parse_version(host_version) if host_version else None
    newest: Dict[str, ModuleDescriptor] = {}
    for d in descriptors:
        if host is not None:
            if d.min_host_version and parse_version(d.min_host_version) > host:
                continue
            if d.max_host_version and parse_version(d.max_host_version) < host:
                continue
        cur = newest.get(d.identifier)
        if cur is None or is_newer(d.version, cur.version):
            newest[d.identifier] = d

    installed = {r.identifier: r for r in registry.active_records()}
    upgrades: List[ModuleUpdateInfo] = []
    fresh: List[ModuleUpdateInfo] = []
    for ident, d in newest.items():
        rec = installed.get(ident)
        if rec is None:
            fresh.append(ModuleUpdateInfo(identifier=ident, new_version=d.version, is_new_install=True))
        elif try_parse_version(rec.version) is None or is_newer(d.version, rec.version):
            upgrades.append(ModuleUpdateInfo(identifier=ident, current_version=rec.version, new_version=d.version))
    return upgrades + fresh
