"""
Reference Cache

Memoises the reference-genome build (sequence restricted to the canonical
chromosomes + ``.fai`` index + ``.dict`` dictionary) per reference version.

A build is done at most once per version: callers in the same process wait on
a per-version lock, callers in other processes on an ``fcntl`` lock file, and
the second caller finds the published build and returns it.
"""

from __future__ import annotations

import fcntl
import gzip
import json
import shutil
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import requests

from ..config.settings import REFERENCE_VERSIONS, ReferenceSettings
from ..core.exceptions import GenoFlowException, ReferenceBuildError
from ..core.logging import get_logger, stage_timer
from ..io.vcf import REFERENCE_CHROMOSOMES
from ..storage.artifacts import ArtifactStore, replace_dir
from ..tools.adapter import ToolAdapter
from ..tools.commands import INDEX_REFERENCE, RESTRICT_REFERENCE, SEQUENCE_DICTIONARY

logger = get_logger(__name__)

BUILD_MANIFEST = "reference.json"


@dataclass(frozen=True)
class ReferenceBuild:
    """Cached reference artifact set for one version."""

    version: str
    fasta: Path
    index: Path
    dictionary: Path

    def files(self) -> List[Path]:
        return [self.fasta, self.index, self.dictionary]

    def is_complete(self) -> bool:
        return all(path.is_file() for path in self.files())

    @classmethod
    def in_directory(cls, version: str, directory: Path) -> "ReferenceBuild":
        return cls(
            version=version,
            fasta=directory / f"{version}.fa",
            index=directory / f"{version}.fa.fai",
            dictionary=directory / f"{version}.dict",
        )


# A builder fills the staging directory with the files of ReferenceBuild.in_directory
ReferenceBuilderFn = Callable[[str, Path], None]


class ReferenceBuilder:
    """
    Default build pipeline: fetch → restrict to canonical chromosomes →
    ``samtools faidx`` index → ``gatk CreateSequenceDictionary``.
    """

    def __init__(
        self,
        adapter: ToolAdapter,
        settings: ReferenceSettings,
        reference_directory: Optional[Path] = None,
    ):
        self.adapter = adapter
        self.settings = settings
        self.reference_directory = Path(reference_directory) if reference_directory else None

    def _local_source(self, version: str) -> Optional[Path]:
        if self.reference_directory is None:
            return None
        for name in (f"{version}.fa", f"{version}.fa.gz", f"{version}.fasta", f"{version}.fasta.gz"):
            candidate = self.reference_directory / version / name
            if candidate.is_file():
                return candidate
        return None

    def download(self, version: str, destination: Path) -> Path:
        """Stream the sequence for ``version`` to ``destination``."""
        url = self.settings.url_for(version)
        logger.info("reference_download_started", version=version, url=url)
        with requests.get(url, stream=True, timeout=self.settings.download_timeout) as response:
            response.raise_for_status()
            with open(destination, "wb") as out:
                for chunk in response.iter_content(chunk_size=self.settings.chunk_size):
                    if chunk:
                        out.write(chunk)
        return destination

    def fetch(self, version: str, staging: Path) -> Path:
        """Return a plain (uncompressed) FASTA for ``version`` inside ``staging``.

        The local source is never used in place, so the reference directory
        stays untouched.
        """
        source = self._local_source(version)
        if source is None:
            source = self.download(version, staging / f"{version}.download.fa.gz")
        else:
            logger.info("reference_local_source", version=version, path=str(source))

        plain = staging / f"{version}.source.fa"
        if not source.name.endswith(".gz"):
            # samtools writes its index beside the FASTA it reads
            shutil.copyfile(source, plain)
            return plain

        with gzip.open(source, "rb") as compressed, open(plain, "wb") as out:
            shutil.copyfileobj(compressed, out, length=self.settings.chunk_size)
        return plain

    def __call__(self, version: str, staging: Path) -> None:
        scratch = staging / "work"
        target = ReferenceBuild.in_directory(version, staging)

        source = self.fetch(version, staging)

        region_file = staging / "regions.txt"
        region_file.write_text("".join(f"chr{name}\n" for name in REFERENCE_CHROMOSOMES))

        restricted = self.adapter.invoke(
            RESTRICT_REFERENCE,
            {"source_fasta": source, "region_file": region_file},
            scratch,
        )
        shutil.move(str(restricted["reference_fasta"]), str(target.fasta))

        index = self.adapter.invoke(INDEX_REFERENCE, {"reference_fasta": target.fasta}, scratch)
        shutil.move(str(index["reference_index"]), str(target.index))

        dictionary = self.adapter.invoke(SEQUENCE_DICTIONARY, {"reference_fasta": target.fasta}, scratch)
        shutil.move(str(dictionary["reference_dict"]), str(target.dictionary))

        shutil.rmtree(scratch, ignore_errors=True)
        for leftover in staging.glob(f"{version}.download*"):
            leftover.unlink()
        for leftover in staging.glob(f"{version}.source.fa*"):
            leftover.unlink()


class ReferenceCache:
    """Version-keyed cache of reference builds shared by all runs."""

    def __init__(self, store: ArtifactStore, builder: ReferenceBuilderFn):
        self.store = store
        self.builder = builder
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _key_lock(self, version: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(version, threading.Lock())

    @contextmanager
    def _process_lock(self, version: str) -> Iterator[None]:
        lock_path = self.store.references_root / f"{version}.lock"
        with open(lock_path, "a+") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def cached(self, version: str) -> Optional[ReferenceBuild]:
        """Return the published build for ``version`` if it is valid."""
        directory = self.store.reference_dir(version)
        if not (directory / BUILD_MANIFEST).is_file():
            return None
        build = ReferenceBuild.in_directory(version, directory)
        return build if build.is_complete() else None

    def get_or_build(self, version: str) -> ReferenceBuild:
        """
        Return the reference build for ``version``, building it if needed.

        Raises:
            ReferenceBuildError: If the version is unknown or any build step fails
        """
        if version not in REFERENCE_VERSIONS:
            raise ReferenceBuildError(f"Unknown reference version: {version}", version)

        build = self.cached(version)
        if build is not None:
            logger.debug("reference_cache_hit", version=version)
            return build

        with self._key_lock(version), self._process_lock(version):
            # Another caller may have finished while we waited
            build = self.cached(version)
            if build is not None:
                logger.info("reference_built_by_other_caller", version=version)
                return build
            return self._build(version)

    def _build(self, version: str) -> ReferenceBuild:
        final_dir = self.store.reference_dir(version)
        staging = Path(tempfile.mkdtemp(prefix=f".{version}.", dir=self.store.references_root))
        try:
            with stage_timer(logger, "reference_build", version=version):
                self.builder(version, staging)

            staged = ReferenceBuild.in_directory(version, staging)
            missing = [path.name for path in staged.files() if not path.is_file()]
            if missing:
                raise ReferenceBuildError(
                    f"Reference build for {version} is missing {', '.join(missing)}", version
                )

            manifest = {
                "version": version,
                "files": [path.name for path in staged.files()],
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            (staging / BUILD_MANIFEST).write_text(json.dumps(manifest, indent=2))
            replace_dir(staging, final_dir)

        except ReferenceBuildError:
            raise
        except (GenoFlowException, OSError, requests.RequestException) as exc:
            raise ReferenceBuildError(f"Reference build for {version} failed: {exc}", version) from exc
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        return ReferenceBuild.in_directory(version, final_dir)
