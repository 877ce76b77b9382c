"""
VCF File Helpers

Thin plain-or-gzip I/O wrapper plus the chromosome naming rules shared by the
preprocessing stages and the scatter controller.
"""

from __future__ import annotations

import gzip
from pathlib import Path
from typing import IO, Iterator, List, Optional, Union

PathLike = Union[str, Path]

# Chromosomes carried through the pipeline (mitochondria and unplaced contigs are dropped)
CANONICAL_CHROMOSOMES: List[str] = [str(i) for i in range(1, 23)] + ["X", "Y"]

# Chromosomes kept in the reference build
REFERENCE_CHROMOSOMES: List[str] = CANONICAL_CHROMOSOMES + ["M"]

# ALT alleles / header lines that only appear in genotype-likelihood (gVCF) files
GVCF_ALT_MARKERS = ("<NON_REF>", "<*>")
GVCF_HEADER_MARKERS = ("##GVCFBlock", "##ALT=<ID=NON_REF")


def is_gzipped(path: PathLike) -> bool:
    return str(path).endswith(".gz")


def open_text(path: PathLike, mode: str = "r") -> IO[str]:
    """Open a VCF/TSV file, handling both plain and gzipped files."""
    if is_gzipped(path):
        return gzip.open(path, mode + "t", encoding="utf-8")
    return open(path, mode, encoding="utf-8")


def normalize_chromosome(name: str) -> str:
    """``chr1`` -> ``1``, ``chrMT``/``MT`` -> ``M``; other names unchanged."""
    key = name[3:] if name.lower().startswith("chr") else name
    if key.upper() in ("M", "MT"):
        return "M"
    if key.upper() in ("X", "Y"):
        return key.upper()
    return key


def chromosome_sort_key(key: str) -> tuple:
    """Sort autosomes numerically, then X, Y, M, then anything else by name."""
    key = normalize_chromosome(key)
    if key.isdigit():
        return (0, int(key), "")
    order = {"X": 1, "Y": 2, "M": 3}
    if key in order:
        return (1, order[key], "")
    return (2, 0, key)


def record_chromosome(line: str) -> str:
    """Shard key of a VCF data line."""
    return normalize_chromosome(line.split("\t", 1)[0])


def iter_header(path: PathLike) -> Iterator[str]:
    with open_text(path) as f:
        for line in f:
            if not line.startswith("#"):
                break
            yield line


def iter_records(path: PathLike) -> Iterator[str]:
    with open_text(path) as f:
        for line in f:
            if line.startswith("#") or not line.strip():
                continue
            yield line


def count_records(path: PathLike) -> int:
    """Count data lines in a VCF."""
    return sum(1 for _ in iter_records(path))


def has_gvcf_marker(path: PathLike, max_records: Optional[int] = 10000) -> bool:
    """
    Check whether a VCF carries genotype likelihoods rather than final calls.

    Looks for gVCF header lines and for the symbolic ``<NON_REF>``/``<*>``
    alleles in the first ``max_records`` records.
    """
    with open_text(path) as f:
        seen = 0
        for line in f:
            if line.startswith("#"):
                if line.startswith(GVCF_HEADER_MARKERS):
                    return True
                continue
            fields = line.split("\t", 5)
            if len(fields) > 4 and any(m in fields[4] for m in GVCF_ALT_MARKERS):
                return True
            seen += 1
            if max_records is not None and seen >= max_records:
                break
    return False


def write_chromosome_map(path: PathLike) -> Path:
    """
    Write the default rename table used by ``bcftools annotate --rename-chrs``.

    Maps UCSC names to bare names (``chr1 -> 1``, ``chrM -> MT``).
    """
    path = Path(path)
    lines = [f"chr{c}\t{c}\n" for c in CANONICAL_CHROMOSOMES]
    lines.append("chrM\tMT\n")
    path.write_text("".join(lines), encoding="utf-8")
    return path
