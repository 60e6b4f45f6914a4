from __future__ import annotations

from typing import Optional

__all__ = [
    "MongoDBInMemoryError",
    "MalformedVersionError",
    "UnsupportedVersionError",
    "UnsupportedSystemError",
    "UnsupportedPlatformError",
    "DownloadError",
    "ChecksumError",
    "SignatureError",
    "BinaryNotFoundError",
    "StartupTimeoutError",
    "StartupFailedError",
    "ReplicaSetError",
]


class MongoDBInMemoryError(Exception):
    pass


class MalformedVersionError(MongoDBInMemoryError):
    """The version string is not of the form x.y.z."""

    def __init__(self, version: str, reason: str) -> None:
        super().__init__(f"invalid MongoDB version {version!r}: {reason}")
        self.version = version
        self.reason = reason


class UnsupportedVersionError(MongoDBInMemoryError):
    def __init__(self, version: str) -> None:
        super().__init__(f"unsupported MongoDB version {version!r}: only version 4.4 and above are supported")
        self.version = version


class UnsupportedSystemError(MongoDBInMemoryError):
    """The host OS, architecture or Linux distribution has no MongoDB build."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"unsupported system: {detail}")
        self.detail = detail


class UnsupportedPlatformError(MongoDBInMemoryError):
    def __init__(self, platform: str) -> None:
        super().__init__(f"invalid spec: unsupported platform {platform}")
        self.platform = platform


class DownloadError(MongoDBInMemoryError):
    def __init__(self, url: str, status_code: Optional[int] = None, detail: str = "") -> None:
        if status_code is not None:
            msg = f"failed to download file: unexpected HTTP status {status_code} for {url}"
        else:
            msg = f"failed to download file: {url}: {detail}"
        super().__init__(msg)
        self.url = url
        self.status_code = status_code


class ChecksumError(MongoDBInMemoryError):
    pass


class SignatureError(MongoDBInMemoryError):
    pass


class BinaryNotFoundError(MongoDBInMemoryError):
    pass


class StartupTimeoutError(MongoDBInMemoryError):
    pass


class StartupFailedError(MongoDBInMemoryError):
    """mongod logged an error or fatal line, or exited, before accepting connections."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ReplicaSetError(MongoDBInMemoryError):
    pass
