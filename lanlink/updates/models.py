"""Pydantic models for update distribution."""

import re
from enum import Enum

from pydantic import BaseModel, Field

from lanlink.errors import InvalidInput

SEMVER_PATTERN = (
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$"
)
_SEMVER = re.compile(SEMVER_PATTERN)


class UpdateKind(str, Enum):
    PRIMARY = "primary"  # signed by the trusted publisher
    CUSTOM = "custom"  # distributed unverified


class UpdateMetadata(BaseModel):
    """The single active update record of a distributor node."""
    version: str = Field(pattern=SEMVER_PATTERN)
    kind: UpdateKind = UpdateKind.PRIMARY
    artifact_name: str
    signature: str = ""


class DownloadTicket(BaseModel):
    """What a verified download hands back to the caller."""
    metadata: UpdateMetadata
    path: str
    backup_name: str
    verified: bool
    # the exact bytes that were verified and backed up
    data: bytes = Field(default=b"", exclude=True, repr=False)


def validate_version(version: str | None) -> str:
    if not version or not _SEMVER.match(version):
        raise InvalidInput(f"Invalid version: {version!r}")
    return version


def version_key(version: str) -> tuple[int, int, int, int]:
    """Sort key; a pre-release sorts before its release."""
    match = _SEMVER.match(validate_version(version))
    major, minor, patch = (int(g) for g in match.groups())
    return major, minor, patch, 0 if "-" in version.split("+")[0] else 1


def backup_name(version: str) -> str:
    return f"backup-{validate_version(version)}.zip"
