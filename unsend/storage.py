"""File storage: a public location and a restricted one (the vault).

Files in ``public/`` may be served to anyone in the room; files in ``vault/``
are only served through identity-gated endpoints. Recall moves a file from
public to vault, and if the move fails the file is deleted instead.
"""

import asyncio
import logging
import os
from pathlib import Path

from unsend.artifacts import Artifact
from unsend.errors import StorageError

logger = logging.getLogger(__name__)


class Storage:
    def __init__(self, public_dir: Path, vault_dir: Path):
        self.public_dir = Path(public_dir)
        self.vault_dir = Path(vault_dir)

    def ensure_dirs(self) -> None:
        self.public_dir.mkdir(parents=True, exist_ok=True)
        self.vault_dir.mkdir(parents=True, exist_ok=True)

    async def save(self, artifact: Artifact, data: bytes) -> Path:
        """Write an uploaded file and record where it landed on ``artifact``."""
        restricted = artifact.starts_restricted
        target = (self.vault_dir if restricted else self.public_dir) / artifact.stored_name
        try:
            await asyncio.to_thread(_write_file, target, data)
        except OSError as e:
            logger.error("Failed to store %s: %s", artifact.id, e)
            raise StorageError("could not store file", artifact_id=artifact.id) from e

        if restricted:
            artifact.restricted_path = target
            artifact.public_path = None
        else:
            artifact.public_path = target
            artifact.restricted_path = None
        return target

    async def move_to_restricted(self, artifact: Artifact) -> None:
        """Take the file out of the public location. Never raises.

        Call with ``artifact.lock`` held. No-op when already restricted.
        """
        if artifact.restricted_path is not None or artifact.public_path is None:
            return

        source = artifact.public_path
        target = self.vault_dir / artifact.stored_name
        try:
            await asyncio.to_thread(_move_file, source, target)
        except OSError as e:
            logger.warning("Moving %s to vault failed (%s), deleting it", artifact.id, e)
            artifact.public_path = None
            artifact.restricted_path = None
            await self.delete_path(source)
            return

        artifact.public_path = None
        artifact.restricted_path = target
        logger.info("Moved %s to vault", artifact.id)

    async def delete_path(self, path: Path) -> bool:
        try:
            await asyncio.to_thread(_unlink, path)
        except OSError as e:
            logger.error("Could not delete %s: %s", path, e)
            return False
        return True


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".part")
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, path)


def _move_file(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    os.replace(source, target)


def _unlink(path: Path) -> None:
    path.unlink(missing_ok=True)
