"""Upstream version queries used by the update manifests.

This module handles:
- Finding the latest docker-ce version in the Docker apt repository
- Checking that a Temurin JDK release is published for every platform
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

# Docker apt repository base URL
DOCKER_APT_BASE = "https://download.docker.com/linux"

# Adoptium release downloads base URL
ADOPTIUM_GITHUB_BASE = "https://github.com/adoptium"

# Timeout for upstream queries (seconds)
FETCH_TIMEOUT = 30

DEBIAN_VERSION_RE = re.compile(r"^(?:(\d+):)?(\d+(?:\.\d+)*)(?:~(\d+))?")
JDK8_VERSION_RE = re.compile(r"^8u\d+-b\d+$")
JDK_VERSION_RE = re.compile(r"^(\d+)(?:\.\d+)*\+\d+$")

# (platform, archive extension) of the JDK builds installed on agents
JDK_PLATFORMS = (
    ("x64_linux", "tar.gz"),
    ("aarch64_linux", "tar.gz"),
    ("x64_windows", "zip"),
)


class FetchError(Exception):
    """Raised when an upstream query fails."""

    def __init__(self, message: str, code: str = "fetch_error") -> None:
        super().__init__(message)
        self.code = code


def build_packages_index_url(
    distribution: str = "ubuntu",
    codename: str = "focal",
    channel: str = "stable",
    arch: str = "amd64",
    base_url: str = DOCKER_APT_BASE,
) -> str:
    """Build the URL of an apt `Packages` index in the Docker repository."""
    return f"{base_url}/{distribution}/dists/{codename}/{channel}/binary-{arch}/Packages"


def parse_packages_index(content: str, package: str) -> list[str]:
    """Return every version of a package listed in an apt `Packages` index.

    Args:
        content: Index content (RFC 822 stanzas separated by blank lines).
        package: Package name.

    Returns:
        Versions in index order.
    """
    versions: list[str] = []
    for stanza in re.split(r"\n\s*\n", content):
        fields: dict[str, str] = {}
        for line in stanza.splitlines():
            name, sep, value = line.partition(":")
            if sep and not line.startswith((" ", "\t")):
                fields[name.strip()] = value.strip()
        if fields.get("Package") == package and fields.get("Version"):
            versions.append(fields["Version"])
    return versions


def debian_version_key(version: str) -> tuple[int, tuple[int, ...], int] | None:
    """Sort key of a Debian package version, None if unparseable.

    Only the epoch, the numeric upstream version and a numeric `~N` build
    suffix are compared, which is enough to order docker-ce releases.
    """
    match = DEBIAN_VERSION_RE.match(version)
    if not match:
        return None
    epoch = int(match.group(1) or 0)
    numbers = tuple(int(part) for part in match.group(2).split("."))
    build = int(match.group(3) or 0)
    return epoch, numbers, build


def latest_version(versions: list[str]) -> str | None:
    """Return the highest parseable version, or None."""
    keyed = [(key, v) for v in versions if (key := debian_version_key(v)) is not None]
    if not keyed:
        return None
    return max(keyed, key=lambda item: item[0])[1]


def _get(client: httpx.Client, url: str, timeout: float) -> httpx.Response:
    try:
        response = client.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
        return response
    except httpx.HTTPStatusError as e:
        raise FetchError(
            f"HTTP error fetching {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise FetchError(f"Timeout fetching {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise FetchError(f"Network error fetching {url}: {e}", code="network_error") from e


def fetch_latest_docker_ce_version(
    client: httpx.Client,
    index_url: str | None = None,
    timeout: float = FETCH_TIMEOUT,
) -> str:
    """Return the latest docker-ce version of the Docker apt repository.

    Raises:
        FetchError: If the index cannot be fetched or lists no docker-ce.
    """
    url = index_url or build_packages_index_url()
    logger.debug("Fetching docker-ce versions from %s", url)
    versions = parse_packages_index(_get(client, url, timeout).text, "docker-ce")
    version = latest_version(versions)
    if version is None:
        raise FetchError(f"No docker-ce version found in {url}", code="not_found")
    logger.info("Latest docker-ce version: %s", version)
    return version


@dataclass
class JdkRelease:
    """Upstream coordinates of a Temurin JDK release."""

    major: str
    tag: str
    file_version: str

    def archive_urls(self, base_url: str = ADOPTIUM_GITHUB_BASE) -> list[str]:
        """Return the release archive URL of every supported platform."""
        prefix = f"{base_url}/temurin{self.major}-binaries/releases/download/{quote(self.tag)}"
        return [
            f"{prefix}/OpenJDK{self.major}U-jdk_{platform}_hotspot_{self.file_version}.{ext}"
            for platform, ext in JDK_PLATFORMS
        ]


def parse_jdk_version(version: str) -> JdkRelease:
    """Parse a JDK version as written in tools-versions.yml.

    Examples: '8u345-b01' (tag jdk8u345-b01), '17.0.4+8' (tag jdk-17.0.4+8).

    Raises:
        ValueError: If the version format is not recognized.
    """
    if JDK8_VERSION_RE.match(version):
        return JdkRelease(
            major="8", tag=f"jdk{version}", file_version=version.replace("-", "")
        )
    match = JDK_VERSION_RE.match(version)
    if match:
        return JdkRelease(
            major=match.group(1),
            tag=f"jdk-{version}",
            file_version=version.replace("+", "_"),
        )
    raise ValueError(f"Unrecognized JDK version: {version}")


def check_jdk_release(
    client: httpx.Client,
    version: str,
    timeout: float = FETCH_TIMEOUT,
    base_url: str = ADOPTIUM_GITHUB_BASE,
) -> list[str]:
    """Check that a JDK release is downloadable for every platform.

    Args:
        client: HTTPX client instance.
        version: JDK version (source value of the update manifest).
        timeout: Request timeout in seconds.
        base_url: Adoptium GitHub base URL.

    Returns:
        URLs of the missing archives (empty when the release is complete).

    Raises:
        ValueError: If the version format is not recognized.
        FetchError: On HTTP errors other than 404, timeouts or network errors.
    """
    release = parse_jdk_version(version)
    missing: list[str] = []
    for url in release.archive_urls(base_url):
        try:
            response = client.head(url, timeout=timeout, follow_redirects=True)
        except httpx.TimeoutException as e:
            raise FetchError(f"Timeout checking {url}", code="timeout") from e
        except httpx.RequestError as e:
            raise FetchError(f"Network error checking {url}: {e}", code="network_error") from e

        if response.status_code == 404:
            logger.warning("JDK archive not available yet: %s", url)
            missing.append(url)
        elif response.is_error:
            raise FetchError(
                f"HTTP error checking {url}: {response.status_code}", code="http_error"
            )
    return missing


__all__ = [
    "ADOPTIUM_GITHUB_BASE",
    "DOCKER_APT_BASE",
    "FetchError",
    "JdkRelease",
    "build_packages_index_url",
    "check_jdk_release",
    "debian_version_key",
    "fetch_latest_docker_ce_version",
    "latest_version",
    "parse_jdk_version",
    "parse_packages_index",
]
