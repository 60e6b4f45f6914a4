# Download, verify and cache mongod binaries
# - Resolves a MongoDB version and the host platform to a fastdl.mongodb.org tarball
# - Streams the tarball, its .sha256 and .sig sidecars and the release public key to temp files
# - Checks the SHA-256 checksum, then the detached OpenPGP signature
# - Extracts bin/mongod and publishes it into the user cache with an atomic rename
from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import platform
import re
import shutil
import tarfile
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import IO, Callable, Mapping, Optional
from urllib.parse import urlparse

import gnupg
import requests

from .errors import (
    BinaryNotFoundError,
    ChecksumError,
    DownloadError,
    MalformedVersionError,
    SignatureError,
    UnsupportedPlatformError,
    UnsupportedSystemError,
    UnsupportedVersionError,
)

__all__ = [
    "DOWNLOAD_BASE_URL",
    "CACHE_FOLDER_NAME",
    "Fetcher",
    "OsReleaseReader",
    "PlatformInfo",
    "ProvisionConfig",
    "VersionSpec",
    "build_cache_path",
    "cache_root",
    "download_url",
    "ensure_available",
    "extract_mongod",
    "fetch",
    "fetched",
    "get_mongod",
    "make_version_spec",
    "new_provision_config",
    "read_os_release",
    "verify",
    "verify_checksum",
    "verify_signature",
]

LOGGER = logging.getLogger(__name__)

DOWNLOAD_BASE_URL = "https://fastdl.mongodb.org"
_PUBLIC_KEY_URL_TEMPL = "https://www.mongodb.org/static/pgp/server-{major}.{minor}.asc"

CACHE_FOLDER_NAME = "mongodb-in-memory"

_HTTP_TIMEOUT_S = 60
_CHUNK_SIZE = 1 << 16

_MIN_VERSION = (4, 4)
_VERSION_PART_RE = re.compile(r"[0-9]+")

# Ordered from newest to oldest; the last entry is the minimum supported release.
_DISTRO_THRESHOLDS: dict[str, tuple[tuple[int, str], ...]] = {
    "ubuntu": ((20, "ubuntu2004"), (18, "ubuntu1804"), (16, "ubuntu1604")),
    "debian": ((10, "debian10"), (9, "debian92")),
}

_PLATFORMS = {"darwin": "macos", "linux": "linux"}
_ARCHS = {"amd64": "x86_64"}
_MACHINE_ALIASES = {"x86_64": "amd64", "x86-64": "amd64", "amd64": "amd64", "x64": "amd64"}

Fetcher = Callable[[str], IO[bytes]]
OsReleaseReader = Callable[[], Mapping[str, str]]


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    # Lower-cased OS name as reported by platform.system(), e.g. "linux" or "darwin"
    system: str
    # CPU architecture using Go-style names, e.g. "amd64"
    machine: str
    # Environment snapshot used to locate the cache directory
    env: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_host(cls) -> "PlatformInfo":
        machine = platform.machine().lower()
        return cls(
            system=platform.system().lower(),
            machine=_MACHINE_ALIASES.get(machine, machine),
            env=dict(os.environ),
        )


def read_os_release() -> Mapping[str, str]:
    return platform.freedesktop_os_release()


@dataclass(frozen=True, slots=True)
class VersionSpec:
    major: int
    minor: int
    patch: int
    # "linux" or "macos"
    platform: str
    arch: str
    # ubuntu2004, ubuntu1804, ubuntu1604, debian10, debian92, or "" on macOS
    distro: str = ""

    @property
    def version(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def _parse_version(version: str) -> tuple[int, int, int]:
    parts = version.split(".")
    if len(parts) != 3:
        raise MalformedVersionError(version, "must be x.y.z")
    parsed: list[int] = []
    for name, part in zip(("major", "minor", "patch"), parts):
        if not _VERSION_PART_RE.fullmatch(part):
            raise MalformedVersionError(version, f"could not parse {name}")
        parsed.append(int(part))
    major, minor, patch = parsed
    if (major, minor) < _MIN_VERSION:
        raise UnsupportedVersionError(version)
    return major, minor, patch


def _detect_distro(os_release: OsReleaseReader) -> str:
    release = os_release()
    distro_id = release.get("ID", "")
    raw_version = release.get("VERSION_ID", "").split(".")[0]
    if not _VERSION_PART_RE.fullmatch(raw_version):
        raise UnsupportedSystemError(f"invalid version number '{raw_version}'")
    distro_version = int(raw_version)

    thresholds = _DISTRO_THRESHOLDS.get(distro_id)
    if thresholds is None:
        raise UnsupportedSystemError(f"invalid linux version '{distro_id}'")
    for min_version, tag in thresholds:
        if distro_version >= min_version:
            return tag
    raise UnsupportedSystemError(
        f"invalid {distro_id} version {distro_version} (min {thresholds[-1][0]})"
    )


def make_version_spec(
    version: str,
    platform_info: Optional[PlatformInfo] = None,
    os_release: Optional[OsReleaseReader] = None,
) -> VersionSpec:
    """Resolve a MongoDB version for a host.

    ``platform_info`` defaults to the current host and ``os_release`` to
    :func:`read_os_release`. The os-release reader is only consulted on Linux.
    """
    major, minor, patch = _parse_version(version)

    info = platform_info if platform_info is not None else PlatformInfo.from_host()
    plat = _PLATFORMS.get(info.system)
    if plat is None:
        raise UnsupportedSystemError(f"OS {info.system}")
    arch = _ARCHS.get(info.machine)
    if arch is None:
        raise UnsupportedSystemError(f"architecture {info.machine}")

    distro = ""
    if plat == "linux":
        distro = _detect_distro(os_release if os_release is not None else read_os_release)

    return VersionSpec(major=major, minor=minor, patch=patch, platform=plat, arch=arch, distro=distro)


def download_url(spec: VersionSpec, base_url: str = DOWNLOAD_BASE_URL) -> str:
    if spec.platform == "linux":
        archive_name = f"linux-{spec.arch}"
        if spec.distro:
            archive_name += f"-{spec.distro}"
    elif spec.platform == "macos":
        archive_name = f"macos-{spec.arch}"
    else:
        raise UnsupportedPlatformError(spec.platform)
    return f"{base_url.rstrip('/')}/{spec.platform}/mongodb-{archive_name}-{spec.version}.tgz"


def cache_root(platform_info: PlatformInfo) -> Path:
    override = platform_info.env.get("XDG_CACHE_HOME", "")
    if override:
        return Path(override)
    home = platform_info.env.get("HOME") or str(Path.home())
    if platform_info.system == "darwin":
        return Path(home, "Library", "Caches")
    if platform_info.system == "linux":
        return Path(home, ".cache")
    raise UnsupportedSystemError(f"OS '{platform_info.system}'")


def build_cache_path(url: str, platform_info: PlatformInfo) -> Path:
    dirname = PurePosixPath(urlparse(url).path).name
    return cache_root(platform_info) / CACHE_FOLDER_NAME / dirname / "mongod"


@dataclass(frozen=True, slots=True)
class ProvisionConfig:
    # The URL where the mongodb tarball can be downloaded from
    source_url: str
    # Where the mongod executable lives once downloaded; a pure function of source_url
    cache_path: Path
    version_spec: VersionSpec

    @property
    def checksum_url(self) -> str:
        return self.source_url + ".sha256"

    @property
    def signature_url(self) -> str:
        return self.source_url + ".sig"

    @property
    def public_key_url(self) -> str:
        # MongoDB signs each release line (major.minor) with its own key
        return _PUBLIC_KEY_URL_TEMPL.format(major=self.version_spec.major, minor=self.version_spec.minor)


def new_provision_config(
    version: str,
    platform_info: Optional[PlatformInfo] = None,
    os_release: Optional[OsReleaseReader] = None,
    base_url: str = DOWNLOAD_BASE_URL,
) -> ProvisionConfig:
    info = platform_info if platform_info is not None else PlatformInfo.from_host()
    spec = make_version_spec(version, info, os_release)
    url = download_url(spec, base_url)
    return ProvisionConfig(source_url=url, cache_path=build_cache_path(url, info), version_spec=spec)


def _remove_temp(path: str | os.PathLike[str]) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        LOGGER.warning("could not remove temp file %s: %s", path, e)


def _discard(fp: IO[bytes]) -> None:
    with contextlib.suppress(OSError):
        fp.close()
    _remove_temp(fp.name)


def fetch(url: str) -> IO[bytes]:
    """Download ``url`` into a new temp file and return it rewound for reading.

    The caller owns the file and must delete it (see :func:`fetched`).
    """
    LOGGER.info("downloading file %s", url)
    try:
        resp = requests.get(url, stream=True, timeout=_HTTP_TIMEOUT_S)
    except requests.RequestException as e:
        raise DownloadError(url, detail=str(e)) from e

    with resp:
        if resp.status_code != 200:
            raise DownloadError(url, status_code=resp.status_code)
        tmp = tempfile.NamedTemporaryFile(prefix="mongodb-in-memory-", delete=False)
        try:
            for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                tmp.write(chunk)
            tmp.flush()
            tmp.seek(0)
        except requests.RequestException as e:
            _discard(tmp)
            raise DownloadError(url, detail=str(e)) from e
        except BaseException:
            _discard(tmp)
            raise

    LOGGER.info("downloaded %s to temp file %s", url, tmp.name)
    return tmp


@contextlib.contextmanager
def fetched(fetcher: Fetcher, url: str):
    fp = fetcher(url)
    try:
        yield fp
    finally:
        _discard(fp)


def _sha256_file(path: str | os.PathLike[str]) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(archive_path: str | os.PathLike[str], config: ProvisionConfig, fetcher: Fetcher = fetch) -> None:
    with fetched(fetcher, config.checksum_url) as checksum_file:
        content = checksum_file.read().decode("utf-8", errors="replace")

    fields = content.split()
    if not fields:
        raise ChecksumError(f"empty checksum file: {config.checksum_url}")
    expected = fields[0].lower()
    actual = _sha256_file(archive_path)
    if expected != actual:
        raise ChecksumError(f"checksum verification failed: expected {expected}, got {actual}")


def verify_signature(archive_path: str | os.PathLike[str], config: ProvisionConfig, fetcher: Fetcher = fetch) -> None:
    with contextlib.ExitStack() as stack:
        key_file = stack.enter_context(fetched(fetcher, config.public_key_url))
        gnupghome = stack.enter_context(
            tempfile.TemporaryDirectory(prefix="mdb-gpg-", ignore_cleanup_errors=True)
        )
        try:
            gpg = gnupg.GPG(gnupghome=gnupghome)
        except (OSError, ValueError) as e:
            raise SignatureError(f"gpg is required to verify MongoDB signatures: {e}") from e

        imported = gpg.import_keys(key_file.read())
        if not imported.fingerprints:
            raise SignatureError(f"could not read public key ring from {config.public_key_url}")

        sig_file = stack.enter_context(fetched(fetcher, config.signature_url))
        verified = gpg.verify_file(sig_file, data_filename=os.fspath(archive_path), close_file=False)
        if not verified:
            raise SignatureError(f"signature verification failed: {verified.status}")


def verify(archive_path: str | os.PathLike[str], config: ProvisionConfig, fetcher: Fetcher = fetch) -> None:
    verify_checksum(archive_path, config, fetcher)
    LOGGER.info("checksum verified successfully: %s", config.checksum_url)
    verify_signature(archive_path, config, fetcher)
    LOGGER.info("signature verified successfully: %s", config.signature_url)


def extract_mongod(archive: IO[bytes], dest_dir: Optional[str | os.PathLike[str]] = None) -> Path:
    """Copy the first ``*/bin/mongod`` entry of a .tgz stream to an executable temp file."""
    archive.seek(0)
    with tarfile.open(fileobj=archive, mode="r|gz") as tf:
        for member in tf:
            if member.isfile() and member.name.endswith("bin/mongod"):
                break
        else:
            raise BinaryNotFoundError("did not find a mongod binary in the tar file")

        src = tf.extractfile(member)
        if src is None:
            raise BinaryNotFoundError(f"could not read {member.name} from the tar file")

        fd, tmp_name = tempfile.mkstemp(prefix=".mongod-", dir=dest_dir)
        try:
            with os.fdopen(fd, "wb") as dst:
                shutil.copyfileobj(src, dst)
            os.chmod(tmp_name, 0o755)
        except BaseException:
            _remove_temp(tmp_name)
            raise
    return Path(tmp_name)


def _download_mongod(config: ProvisionConfig, fetcher: Fetcher) -> Path:
    download_start = time.monotonic()
    cache_dir = config.cache_path.parent

    with fetched(fetcher, config.source_url) as archive:
        verify(archive.name, config, fetcher)

        cache_dir.mkdir(parents=True, exist_ok=True)
        # Extract next to the cache path so the rename below stays on one filesystem
        mongod_tmp = extract_mongod(archive, dest_dir=cache_dir)
        try:
            os.replace(mongod_tmp, config.cache_path)
        except BaseException:
            _remove_temp(mongod_tmp)
            raise

    LOGGER.info(
        "mongod downloaded and stored in cache: %s (%.1fs)",
        config.cache_path,
        time.monotonic() - download_start,
    )
    return config.cache_path


def ensure_available(config: ProvisionConfig, fetcher: Fetcher = fetch) -> Path:
    """Return the cached mongod for ``config``, downloading and verifying it first if absent.

    A file at ``config.cache_path`` is trusted as-is.
    """
    if config.cache_path.exists():
        LOGGER.info("mongod found in cache: %s", config.cache_path)
        return config.cache_path
    return _download_mongod(config, fetcher)


def get_mongod(
    version: str,
    fetcher: Fetcher = fetch,
    platform_info: Optional[PlatformInfo] = None,
    os_release: Optional[OsReleaseReader] = None,
) -> Path:
    config = new_provision_config(version, platform_info, os_release)
    return ensure_available(config, fetcher)
