"""
Build a signed update artifact from an application tree.

This is the library half of the offline packaging step run by a publisher;
the node itself never calls it. Its output (artifact plus metadata) is
what ``UpdateDistributor.publish`` and the peer fetch path consume.
"""

import logging
import os
import zipfile
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from lanlink.errors import InvalidInput
from lanlink.storage.json_store import JsonRecord
from lanlink.updates.models import UpdateKind, UpdateMetadata, validate_version
from lanlink.updates.signing import sign_artifact

logger = logging.getLogger(__name__)

METADATA_NAME = "update-metadata.json"


def artifact_name(version: str) -> str:
    return f"lanlink-{version}.zip"


def build_update(
    source_dir: Path,
    output_dir: Path,
    version: str,
    kind: UpdateKind = UpdateKind.PRIMARY,
    private_key: Ed25519PrivateKey | None = None,
) -> UpdateMetadata:
    """Zip ``source_dir`` into ``output_dir`` and write its metadata record.

    Primary builds are signed over the exact archive bytes; custom builds
    carry no signature.
    """
    validate_version(version)
    source_dir = Path(source_dir)
    output_dir = Path(output_dir)
    if not source_dir.is_dir():
        raise InvalidInput(f"Not a directory: {source_dir}")
    if kind == UpdateKind.PRIMARY and private_key is None:
        raise InvalidInput("A primary update needs the publisher's signing key")

    output_dir.mkdir(parents=True, exist_ok=True)
    archive = output_dir / artifact_name(version)
    with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for root, dirs, files in os.walk(source_dir):
            dirs.sort()
            for name in sorted(files):
                path = Path(root) / name
                zf.write(path, path.relative_to(source_dir).as_posix())

    signature = ""
    if kind == UpdateKind.PRIMARY:
        signature = sign_artifact(private_key, archive.read_bytes())

    metadata = UpdateMetadata(
        version=version, kind=kind, artifact_name=archive.name, signature=signature
    )
    JsonRecord(output_dir / METADATA_NAME).save(metadata.model_dump(mode="json"))
    logger.info(f"Built {kind.value} update {version}: {archive} ({archive.stat().st_size} bytes)")
    return metadata
