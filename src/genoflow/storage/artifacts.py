"""
Artifact Store

Filesystem-backed storage for stage outputs. Every artifact lives in its own
directory, namespaced by run id::

    <root>/runs/<run_id>/<stage>/<output>[/<shard>]/<file> + artifact.json

The reference build is the only artifact shared between runs and lives under
``<root>/references/<version>``.

An artifact directory only ever appears through a rename of a fully written
temporary directory, so readers never observe a partial artifact.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..core.exceptions import GenoFlowException, NotFoundError, StorageError
from ..core.logging import get_logger

logger = get_logger(__name__)

MANIFEST_NAME = "artifact.json"

# Index files that travel with their data file (appended to the full name)
COMPANION_SUFFIXES = (".tbi", ".csi", ".fai", ".idx")

# Sequence dictionaries replace the last suffix: hg38.fa -> hg38.dict
DICTIONARY_SUFFIX = ".dict"

_SAFE_COMPONENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class ArtifactRef:
    """Identifier of an artifact: (run, stage, output name, optional shard)."""

    run_id: str
    stage: str
    output: str
    shard: Optional[str] = None

    @property
    def key(self) -> str:
        base = f"{self.run_id}:{self.stage}/{self.output}"
        return f"{base}@{self.shard}" if self.shard else base

    def for_shard(self, shard: str) -> "ArtifactRef":
        return ArtifactRef(self.run_id, self.stage, self.output, shard)

    def __str__(self) -> str:
        return self.key


def calculate_md5(file_path: Path) -> str:
    md5_hash = hashlib.md5()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            md5_hash.update(chunk)
    return md5_hash.hexdigest()


def replace_dir(tmp_dir: Path, final_dir: Path) -> None:
    """Rename ``tmp_dir`` onto ``final_dir``, retiring any previous copy."""
    if final_dir.exists():
        retired = final_dir.with_name(f".{final_dir.name}.old-{uuid.uuid4().hex[:8]}")
        os.replace(final_dir, retired)
        os.replace(tmp_dir, final_dir)
        shutil.rmtree(retired, ignore_errors=True)
    else:
        os.replace(tmp_dir, final_dir)


def is_within(path: Union[str, Path], directory: Union[str, Path]) -> bool:
    """True if ``path`` resolves to a location inside ``directory``."""
    return Path(path).resolve().is_relative_to(Path(directory).resolve())


def _check_component(value: str, what: str) -> str:
    if not value or not _SAFE_COMPONENT.match(value):
        raise StorageError(f"Invalid {what} for artifact path: {value!r}")
    return value


class ArtifactStore:
    """Atomic, run-namespaced storage for pipeline artifacts."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.runs_root = self.root / "runs"
        self.references_root = self.root / "references"
        for path in (self.runs_root, self.references_root):
            path.mkdir(parents=True, exist_ok=True)

    # ── layout ──────────────────────────────────────────────────────────────

    def run_dir(self, run_id: str) -> Path:
        return self.runs_root / _check_component(run_id, "run id")

    def reference_dir(self, version: str) -> Path:
        return self.references_root / _check_component(version, "reference version")

    def artifact_dir(self, ref: ArtifactRef) -> Path:
        path = (
            self.run_dir(ref.run_id)
            / _check_component(ref.stage, "stage name")
            / _check_component(ref.output, "output name")
        )
        if ref.shard is not None:
            path = path / _check_component(ref.shard, "shard key")
        return path

    # ── write ───────────────────────────────────────────────────────────────

    def put(
        self,
        ref: ArtifactRef,
        data: Union[bytes, str, Path],
        filename: Optional[str] = None,
        move: bool = False,
    ) -> ArtifactRef:
        """
        Store ``data`` as the artifact ``ref``.

        Args:
            ref: Artifact identifier
            data: Raw bytes, or a path to a file that is copied into the store
                together with its companion index files
            filename: Name of the stored file (default: source file name, or
                the output name for bytes)
            move: Move the source file instead of copying it. Only for files
                the caller owns, such as stage scratch output

        Returns:
            The artifact reference

        Raises:
            StorageError: If the artifact cannot be written
        """
        final_dir = self.artifact_dir(ref)
        final_dir.parent.mkdir(parents=True, exist_ok=True)
        tmp_dir = Path(tempfile.mkdtemp(prefix=f".{final_dir.name}.", dir=final_dir.parent))

        try:
            if isinstance(data, bytes):
                name = filename or ref.output
                (tmp_dir / name).write_bytes(data)
                companions: List[str] = []
            else:
                source = Path(data)
                if not source.is_file():
                    raise NotFoundError("Artifact source file", source)
                name = filename or source.name
                transfer = shutil.move if move else shutil.copyfile
                transfer(str(source), str(tmp_dir / name))
                companions = self._transfer_companions(source, tmp_dir / name, move)

            stored = tmp_dir / name
            manifest = {
                "run_id": ref.run_id,
                "stage": ref.stage,
                "output": ref.output,
                "shard": ref.shard,
                "filename": name,
                "companions": companions,
                "size": stored.stat().st_size,
                "md5": calculate_md5(stored),
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            (tmp_dir / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2))
            replace_dir(tmp_dir, final_dir)

        except GenoFlowException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise
        except OSError as exc:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise StorageError(f"Failed to store artifact {ref}: {exc}", str(final_dir)) from exc

        logger.debug("artifact_stored", artifact=ref.key, filename=name, moved=move)
        return ref

    @staticmethod
    def _transfer_companions(source: Path, stored: Path, move: bool) -> List[str]:
        transfer = shutil.move if move else shutil.copyfile
        moved = []
        pairs = [
            (source.with_name(source.name + suffix), stored.with_name(stored.name + suffix))
            for suffix in COMPANION_SUFFIXES
        ]
        pairs.append((source.with_suffix(DICTIONARY_SUFFIX), stored.with_suffix(DICTIONARY_SUFFIX)))
        for companion, target in pairs:
            if companion != source and companion.is_file():
                transfer(str(companion), str(target))
                moved.append(target.name)
        return moved

    # ── read ────────────────────────────────────────────────────────────────

    def manifest(self, ref: ArtifactRef) -> Dict[str, Any]:
        manifest_file = self.artifact_dir(ref) / MANIFEST_NAME
        if not manifest_file.is_file():
            raise NotFoundError("Artifact", ref)
        return json.loads(manifest_file.read_text())

    def get(self, ref: ArtifactRef) -> Path:
        """
        Return the path of a completed artifact.

        Raises:
            NotFoundError: If the artifact was never completed
        """
        manifest = self.manifest(ref)
        path = self.artifact_dir(ref) / manifest["filename"]
        if not path.is_file():
            raise NotFoundError("Artifact file", path)
        return path

    def exists(self, ref: ArtifactRef) -> bool:
        try:
            self.get(ref)
        except NotFoundError:
            return False
        return True

    def companions(self, ref: ArtifactRef) -> List[Path]:
        directory = self.artifact_dir(ref)
        return [directory / name for name in self.manifest(ref).get("companions", [])]

    # ── publish ─────────────────────────────────────────────────────────────

    def publish(self, ref: ArtifactRef, destination: Union[str, Path]) -> Path:
        """
        Copy a completed artifact (and its index files) into ``destination``.

        Args:
            ref: Artifact to publish
            destination: Results directory

        Returns:
            Path of the published data file
        """
        source = self.get(ref)
        dest_dir = Path(destination)
        dest_dir.mkdir(parents=True, exist_ok=True)

        published = dest_dir / source.name
        for path in [source] + self.companions(ref):
            target = dest_dir / path.name
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=dest_dir)
            os.close(fd)
            try:
                shutil.copyfile(path, tmp_name)
                os.replace(tmp_name, target)
            except OSError as exc:
                Path(tmp_name).unlink(missing_ok=True)
                raise StorageError(f"Failed to publish {ref}: {exc}", str(target)) from exc

        logger.info("artifact_published", artifact=ref.key, destination=str(published))
        return published
