"""File format helpers."""

from .vcf import (
    CANONICAL_CHROMOSOMES,
    REFERENCE_CHROMOSOMES,
    chromosome_sort_key,
    count_records,
    has_gvcf_marker,
    normalize_chromosome,
    open_text,
    record_chromosome,
)

__all__ = [
    "CANONICAL_CHROMOSOMES",
    "REFERENCE_CHROMOSOMES",
    "chromosome_sort_key",
    "count_records",
    "has_gvcf_marker",
    "normalize_chromosome",
    "open_text",
    "record_chromosome",
]
