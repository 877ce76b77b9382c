"""
Scatter/Gather Controller

Splits a VCF into one shard per chromosome found in its records, runs a shard
executor on every shard in parallel and merges the per-shard outputs in
ascending chromosome order once every shard has completed.
"""

from __future__ import annotations

import csv
import gzip
import re
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Literal, Mapping, Optional, Sequence, Tuple

import pandas as pd

from ..core.exceptions import PipelineError, ShardFailure
from ..core.logging import get_logger
from ..io.vcf import chromosome_sort_key, iter_header, open_text, record_chromosome
from ..storage.artifacts import is_within
from .graph import StageContext

logger = get_logger(__name__)

ShardStatus = Literal["pending", "completed", "failed"]

KeyExtractor = Callable[[str], str]
ShardExecutor = Callable[["Shard", Path], Mapping[str, Path]]

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]")


@dataclass
class Shard:
    """One chromosome partition and its processing state."""

    key: str
    input: Path
    status: ShardStatus = "pending"
    outputs: Dict[str, Path] = field(default_factory=dict)
    error: Optional[str] = None


class ShardSet:
    """Tracked collection of shards keyed by chromosome."""

    def __init__(self, shards: Sequence[Shard] = ()):
        self._lock = threading.Lock()
        self._shards: Dict[str, Shard] = {}
        for shard in shards:
            self.add(shard.key, shard.input)

    def add(self, key: str, input_path: Path) -> Shard:
        with self._lock:
            if key in self._shards:
                raise PipelineError(f"Duplicate shard key: {key}")
            shard = Shard(key=key, input=Path(input_path))
            self._shards[key] = shard
            return shard

    def keys(self) -> List[str]:
        """Shard keys in ascending chromosome order."""
        return sorted(self._shards, key=chromosome_sort_key)

    def __iter__(self) -> Iterator[Shard]:
        return iter([self._shards[key] for key in self.keys()])

    def __len__(self) -> int:
        return len(self._shards)

    def __contains__(self, key: object) -> bool:
        return key in self._shards

    def __getitem__(self, key: str) -> Shard:
        return self._shards[key]

    def mark_complete(self, key: str, outputs: Mapping[str, Path]) -> None:
        with self._lock:
            shard = self._shards[key]
            shard.status = "completed"
            shard.outputs = {name: Path(path) for name, path in outputs.items()}
            shard.error = None

    def mark_failed(self, key: str, reason: str) -> None:
        with self._lock:
            shard = self._shards[key]
            shard.status = "failed"
            shard.error = reason

    def incomplete(self) -> List[str]:
        return [key for key in self.keys() if self._shards[key].status != "completed"]

    def require_complete(self, output: Optional[str] = None) -> None:
        """
        Assert every shard completed (and produced ``output`` if given).

        Raises:
            ShardFailure: Naming the first missing shard in chromosome order
        """
        for key in self.keys():
            shard = self._shards[key]
            if shard.status != "completed":
                raise ShardFailure(key, shard.error or f"shard is {shard.status}")
            if output is not None and output not in shard.outputs:
                raise ShardFailure(key, f"no '{output}' output")

    def outputs(self, output: str) -> List[Tuple[str, Path]]:
        """``(key, path)`` of one output across all shards, in chromosome order."""
        return [(shard.key, shard.outputs[output]) for shard in self if output in shard.outputs]


def _shard_filename(key: str) -> str:
    return f"{_UNSAFE_FILENAME.sub('_', key)}.vcf"


def scatter(
    path: Path,
    out_dir: Path,
    key_extractor: KeyExtractor = record_chromosome,
) -> ShardSet:
    """
    Split a VCF into one file per key found in its records.

    Every shard file carries the complete header of the source. Keys are
    discovered from the content; nothing is assumed about which
    chromosomes are present.

    Args:
        path: Source VCF (plain or gzipped)
        out_dir: Directory receiving ``<key>.vcf`` files
        key_extractor: Maps a data line to its shard key

    Returns:
        ShardSet with one pending shard per key
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    shards = ShardSet()
    header: List[str] = []

    with ExitStack() as stack, open_text(path) as source:
        handles = {}
        for line in source:
            if line.startswith("#"):
                header.append(line)
                continue
            if not line.strip():
                continue
            key = key_extractor(line)
            handle = handles.get(key)
            if handle is None:
                shard = shards.add(key, out_dir / _shard_filename(key))
                handle = stack.enter_context(open(shard.input, "w", encoding="utf-8"))
                handle.writelines(header)
                handles[key] = handle
            handle.write(line)

    logger.info("scatter_completed", source=str(path), shards=shards.keys())
    return shards


# ═══════════════════════════════════════════════════════════════
#  Merge strategies
# ═══════════════════════════════════════════════════════════════


class MergeStrategy:
    """
    Base class of gather strategies.

    Args:
        comment_header: Header is every leading ``#`` line (VCF); otherwise
            the header is the first line (tab-separated table)
    """

    def __init__(self, comment_header: bool = False):
        self.comment_header = comment_header

    def read_header(self, path: Path) -> List[str]:
        if self.comment_header:
            return list(iter_header(path))
        with open_text(path) as f:
            first = f.readline()
        return [first] if first else []

    def check_headers(self, sources: Sequence[Tuple[str, Path]]) -> List[str]:
        """Return the common header; raise if any shard disagrees."""
        expected: Optional[List[str]] = None
        first_key = None
        for key, path in sources:
            header = self.read_header(path)
            if expected is None:
                expected, first_key = header, key
            elif header != expected:
                raise ShardFailure(key, f"header differs from shard {first_key}")
        return expected or []

    def merge(self, sources: Sequence[Tuple[str, Path]], destination: Path) -> Path:
        raise NotImplementedError


class HeaderOnceConcat(MergeStrategy):
    """Header written once, then the rows of every shard in order."""

    def _rows(self, path: Path, skip: int) -> pd.DataFrame:
        try:
            return pd.read_csv(
                path,
                sep="\t",
                header=None,
                skiprows=skip,
                dtype=str,
                keep_default_na=False,
                na_filter=False,
                quoting=csv.QUOTE_NONE,
                compression="gzip" if str(path).endswith(".gz") else None,
            )
        except pd.errors.EmptyDataError:
            return pd.DataFrame()

    def merge(self, sources: Sequence[Tuple[str, Path]], destination: Path) -> Path:
        header = self.check_headers(sources)
        frames = [self._rows(path, len(header)) for _, path in sources]
        frames = [frame for frame in frames if not frame.empty]

        destination.parent.mkdir(parents=True, exist_ok=True)
        with open_text(destination, "w") as out:
            out.writelines(header)
            if frames:
                merged = pd.concat(frames, ignore_index=True).fillna("")
                out.writelines("\t".join(row) + "\n" for row in merged.itertuples(index=False, name=None))
        return destination


class CompressedConcat(MergeStrategy):
    """
    Concatenation of gzip outputs.

    The first shard's compressed stream is copied as is; every later shard
    contributes its data rows only, appended as an extra gzip member.
    """

    def merge(self, sources: Sequence[Tuple[str, Path]], destination: Path) -> Path:
        header = self.check_headers(sources)
        destination.parent.mkdir(parents=True, exist_ok=True)

        with open(destination, "wb") as out:
            for index, (_, path) in enumerate(sources):
                if index == 0:
                    with open(path, "rb") as first:
                        shutil.copyfileobj(first, out)
                    continue
                with gzip.open(path, "rt", encoding="utf-8") as f:
                    rows = f.readlines()[len(header):]
                if rows:
                    out.write(gzip.compress("".join(rows).encode("utf-8")))
        return destination


def gather(
    shards: ShardSet,
    output: str,
    strategy: MergeStrategy,
    destination: Path,
) -> Path:
    """
    Merge one output of all shards into ``destination``.

    Raises:
        ShardFailure: If any shard did not complete
    """
    shards.require_complete(output)
    sources = shards.outputs(output)
    if not sources:
        raise PipelineError(f"Nothing to gather for {output}: no shards")
    strategy.merge(sources, Path(destination))
    logger.info("gather_completed", output=output, shards=[key for key, _ in sources])
    return Path(destination)


# ═══════════════════════════════════════════════════════════════
#  Controller
# ═══════════════════════════════════════════════════════════════


class ScatterGatherController:
    """Scatter a stage input, process shards in parallel, gather outputs."""

    def __init__(
        self,
        shard_workers: int = 4,
        key_extractor: KeyExtractor = record_chromosome,
        resume: bool = False,
    ):
        self.shard_workers = shard_workers
        self.resume = resume
        self.key_extractor = key_extractor

    def run(
        self,
        context: StageContext,
        source: Path,
        executor: ShardExecutor,
        strategies: Mapping[str, MergeStrategy],
        filenames: Mapping[str, str],
    ) -> Dict[str, Path]:
        """
        Run ``executor`` on every chromosome of ``source`` and merge the results.

        Shard outputs are stored as shard artifacts of the calling stage; with
        a resumed run, shards whose outputs are all stored are not re-run.

        Args:
            context: Context of the calling stage
            source: VCF to scatter
            executor: ``(shard, scratch) -> {output: path}``
            strategies: Output name -> merge strategy
            filenames: Output name -> merged file name

        Returns:
            Output name -> merged file (inside the stage scratch directory)

        Raises:
            ShardFailure: If any shard failed
        """
        shards = scatter(source, context.scratch / "shards", self.key_extractor)
        if not len(shards):
            raise PipelineError(f"No records to scatter in {source}", step=context.stage)

        log = logger.bind(run_id=context.run_id, stage=context.stage)
        outputs = list(strategies)

        def process(shard: Shard) -> Dict[str, Path]:
            refs = {name: context.ref(name, shard.key) for name in outputs}
            if self.resume and all(context.store.exists(ref) for ref in refs.values()):
                log.info("shard_reused", shard=shard.key)
                return {name: context.store.get(ref) for name, ref in refs.items()}

            scratch = context.scratch / f"shard-{_UNSAFE_FILENAME.sub('_', shard.key)}"
            scratch.mkdir(parents=True, exist_ok=True)
            produced = executor(shard, scratch)
            missing = [name for name in outputs if name not in produced]
            if missing:
                raise PipelineError(f"Shard {shard.key} did not produce {missing}", step=context.stage)
            stored = {}
            for name in outputs:
                context.store.put(refs[name], Path(produced[name]), move=is_within(produced[name], scratch))
                stored[name] = context.store.get(refs[name])
            return stored

        with ThreadPoolExecutor(max_workers=self.shard_workers, thread_name_prefix="shard") as pool:
            futures = {pool.submit(process, shard): shard.key for shard in shards}
            for future in as_completed(futures):
                key = futures[future]
                try:
                    shards.mark_complete(key, future.result())
                    log.info("shard_completed", shard=key)
                except Exception as exc:
                    shards.mark_failed(key, str(exc))
                    log.error("shard_failed", shard=key, error=str(exc))

        merged = {}
        for name, strategy in strategies.items():
            merged[name] = gather(shards, name, strategy, context.scratch / filenames[name])
        return merged
