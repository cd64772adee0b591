"""
Update Distributor.

Publishes the node's current update metadata, answers peer update
requests over the relay, serves verified artifacts (writing a
version-named backup before anything can be applied), installs, and
hands back backups for rollback.
"""

import asyncio
import io
import logging
import os
import shutil
import signal
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Awaitable, Callable

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from lanlink.config import APP_DIR, BACKUPS_DIR, METADATA_PATH, UPDATES_DIR
from lanlink.errors import InstallFailed, NotFound, Offline, VerificationFailed
from lanlink.presence.models import ProfileFields
from lanlink.presence.store import PresenceStore
from lanlink.relay.envelope import BaseEnvelope, UpdateResponseEnvelope
from lanlink.storage.json_store import ActivityLog, JsonRecord
from lanlink.transfer.files import validate_filename
from lanlink.updates.models import (
    DownloadTicket,
    UpdateKind,
    UpdateMetadata,
    backup_name,
    validate_version,
)
from lanlink.updates.signing import verify_artifact

logger = logging.getLogger(__name__)

Notify = Callable[[str, BaseEnvelope], Awaitable[int]]


def terminate_process() -> None:
    """Ask the running server to shut down so its supervisor restarts it."""
    logger.info("Restarting on the new version...")
    os.kill(os.getpid(), signal.SIGTERM)


class UpdateDistributor:
    """Owns the update metadata record, artifacts and backups of this node."""

    def __init__(
        self,
        presence: PresenceStore,
        notify: Notify,
        activity: ActivityLog,
        local_address: str,
        publisher_key: Ed25519PublicKey | None,
        updates_dir: Path = UPDATES_DIR,
        backups_dir: Path = BACKUPS_DIR,
        metadata_path: Path = METADATA_PATH,
        app_dir: Path = APP_DIR,
        terminate: Callable[[], None] = terminate_process,
        restart_delay: float = 1.0,
    ) -> None:
        self.presence = presence
        self._notify = notify
        self._activity = activity
        self.local_address = local_address
        self._publisher_key = publisher_key
        self.updates_dir = Path(updates_dir)
        self.backups_dir = Path(backups_dir)
        self.app_dir = Path(app_dir)
        self._record = JsonRecord(metadata_path)
        self._lock = asyncio.Lock()
        self._terminate = terminate
        self._restart_delay = restart_delay

    # --- Metadata ---

    async def current(self) -> UpdateMetadata | None:
        if not self._record.exists():
            return None
        data = await asyncio.to_thread(self._record.load)
        return UpdateMetadata(**data) if data else None

    async def require_current(self) -> UpdateMetadata:
        metadata = await self.current()
        if metadata is None:
            raise NotFound("No update metadata")
        return metadata

    async def publish(self, metadata: UpdateMetadata) -> UpdateMetadata:
        """Make ``metadata`` the active record; its artifact must already exist."""
        path = self._artifact_path(metadata)
        if not path.exists():
            raise NotFound(f"Artifact {metadata.artifact_name} not found")
        async with self._lock:
            await asyncio.to_thread(self._record.save, metadata.model_dump(mode="json"))
        logger.info(f"Published update {metadata.version} ({metadata.kind.value})")
        await self._activity.record(
            "update_publish", f"version: {metadata.version}, kind: {metadata.kind.value}"
        )
        return metadata

    def _artifact_path(self, metadata: UpdateMetadata) -> Path:
        return self.updates_dir / validate_filename(metadata.artifact_name)

    def backup_path(self, version: str) -> Path:
        return self.backups_dir / backup_name(version)

    # --- Peer requests ---

    async def handle_update_request(self, version: str, requester: str) -> bool:
        """Relay ``update-request``: answer only when our version matches."""
        metadata = await self.current()
        if metadata is None or metadata.version != version:
            logger.debug(f"No update {version} to offer {requester}")
            return False
        await self._notify(
            requester,
            UpdateResponseEnvelope(
                metadata=metadata.model_dump(mode="json"),
                target_address=requester,
                sender_address=self.local_address,
            ),
        )
        return True

    async def request_peer_update(self, requester: str, target: str, version: str) -> UpdateMetadata:
        """Control-surface variant of ``update-request``."""
        validate_version(version)
        if await self.presence.is_offline(requester):
            raise Offline(f"{requester} is offline; update requests are refused")
        metadata = await self.require_current()
        if metadata.version != version:
            raise NotFound(f"Requested {version}, have {metadata.version}")
        if not self._artifact_path(metadata).exists():
            raise NotFound(f"Artifact {metadata.artifact_name} not found")

        await self._activity.record(
            "peer_update_request", f"requester: {requester}, target: {target}, version: {version}"
        )
        await self.handle_update_request(version, requester)
        return metadata

    # --- Verification, download, backup ---

    async def _verified_bytes(self, metadata: UpdateMetadata, data: bytes) -> bool:
        """Return True when verified; raise for a primary artifact that fails."""
        if metadata.kind == UpdateKind.CUSTOM:
            logger.warning(f"Update {metadata.version} is a custom build and is not verified")
            return False
        ok = await asyncio.to_thread(verify_artifact, self._publisher_key, data, metadata.signature)
        if not ok:
            logger.warning(
                f"SECURITY: signature verification failed for {metadata.artifact_name} "
                f"(version {metadata.version})"
            )
            await self._activity.record(
                "verification_failed", f"file: {metadata.artifact_name}, version: {metadata.version}"
            )
            raise VerificationFailed(f"Signature verification failed for {metadata.version}")
        return True

    async def _write_backup(self, version: str, data: bytes) -> Path:
        path = self.backup_path(version)
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        logger.info(f"Backup written: {path.name}")
        return path

    async def prepare_download(self, address: str | None = None) -> DownloadTicket:
        """Verify the active artifact and back it up before it is served."""
        if address and await self.presence.is_offline(address):
            raise Offline(f"{address} is offline; downloads are refused")
        metadata = await self.require_current()
        path = self._artifact_path(metadata)
        if not path.exists():
            raise NotFound(f"Artifact {metadata.artifact_name} not found")

        data = await asyncio.to_thread(path.read_bytes)
        verified = await self._verified_bytes(metadata, data)
        backup = await self._write_backup(metadata.version, data)

        await self._activity.record(
            "update_download", f"file: {metadata.artifact_name}, version: {metadata.version}"
        )
        return DownloadTicket(
            metadata=metadata,
            path=str(path),
            backup_name=backup.name,
            verified=verified,
            data=data,
        )

    async def store_artifact(self, metadata: UpdateMetadata, data: bytes) -> DownloadTicket:
        """Accept an artifact pulled from a peer: verify, back up, then publish."""
        verified = await self._verified_bytes(metadata, data)
        backup = await self._write_backup(metadata.version, data)
        path = self._artifact_path(metadata)
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        await self.publish(metadata)
        return DownloadTicket(
            metadata=metadata,
            path=str(path),
            backup_name=backup.name,
            verified=verified,
            data=data,
        )

    # --- Install / rollback ---

    async def install(self, version: str, allow_unverified: bool = False) -> UpdateMetadata:
        """Apply the active artifact, record the new version, then restart."""
        validate_version(version)
        metadata = await self.require_current()
        if metadata.version != version:
            raise NotFound(f"No artifact for version {version}")
        path = self._artifact_path(metadata)
        if not path.exists():
            raise NotFound(f"Artifact {metadata.artifact_name} not found")

        data = await asyncio.to_thread(path.read_bytes)
        verified = await self._verified_bytes(metadata, data)
        if not verified and not allow_unverified:
            raise VerificationFailed(
                f"Update {version} is an unverified custom build; explicit opt-in required"
            )

        try:
            await asyncio.to_thread(self._extract, data)
        except (zipfile.BadZipFile, OSError, ValueError) as e:
            logger.error(f"Update install failed: {e}")
            await self._activity.record("update_install_failed", f"version: {version}, error: {e}")
            raise InstallFailed(f"Install of {version} failed: {e}") from e

        await self._record_local_version(version)
        await self._activity.record("update_install", f"version: {version}, file: {metadata.artifact_name}")
        logger.info(f"Installed update {version}; restarting in {self._restart_delay}s")
        asyncio.get_running_loop().call_later(self._restart_delay, self._terminate)
        return metadata

    def _extract(self, data: bytes) -> None:
        """
        Build the updated tree beside the app directory and swap it in.

        The verified archive bytes are unpacked into a staging directory
        and laid over a copy of the current tree. Only a complete result
        replaces ``app_dir``; any failure before the swap leaves it as it was.
        """
        self.app_dir.mkdir(parents=True, exist_ok=True)
        work = Path(tempfile.mkdtemp(prefix=".staging-", dir=self.app_dir.parent))
        incoming = work / "incoming"
        candidate = work / "app"
        previous = work / "previous"
        try:
            incoming.mkdir()
            with zipfile.ZipFile(io.BytesIO(data)) as zf:
                for member in zf.namelist():
                    parts = PurePosixPath(member).parts
                    if member.startswith("/") or ".." in parts:
                        raise ValueError(f"Unsafe path in archive: {member}")
                zf.extractall(incoming)
            shutil.copytree(self.app_dir, candidate, symlinks=True)
            shutil.copytree(incoming, candidate, symlinks=True, dirs_exist_ok=True)

            os.replace(self.app_dir, previous)
            try:
                os.replace(candidate, self.app_dir)
            except OSError:
                os.replace(previous, self.app_dir)
                raise
        finally:
            shutil.rmtree(work, ignore_errors=True)

    async def _record_local_version(self, version: str) -> None:
        profile = await self.presence.get_profile(self.local_address)
        if profile is None:
            await self.presence.upsert_profile(self.local_address, ProfileFields(version=version))
        else:
            await self.presence.set_version(self.local_address, version)

    async def rollback(self, version: str) -> bytes:
        """Return the backup for ``version`` verbatim; metadata is untouched."""
        path = self.backup_path(version)
        if not path.exists():
            raise NotFound(f"No backup for version {version}")
        data = await asyncio.to_thread(path.read_bytes)
        await self._activity.record("rollback", f"version: {version}")
        return data
