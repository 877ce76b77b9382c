"""
Command contracts of the external collaborators.

Every template is a fixed argument list; placeholders are filled with input
artifact paths, declared output paths and run parameters by ``ToolAdapter``.
"""

from .adapter import CommandTemplate

# Genome assembly names expected by VEP
VEP_ASSEMBLY = {"hg19": "GRCh37", "hg38": "GRCh38"}


# ═══════════════════════════════════════════════════════════════
#  Reference build
# ═══════════════════════════════════════════════════════════════

RESTRICT_REFERENCE = CommandTemplate(
    tool="samtools",
    args=("faidx", "{source_fasta}", "--region-file", "{region_file}", "-o", "{reference_fasta}"),
    outputs={"reference_fasta": "reference.fa"},
)

INDEX_REFERENCE = CommandTemplate(
    tool="samtools",
    args=("faidx", "--fai-idx", "{reference_index}", "{reference_fasta}"),
    outputs={"reference_index": "reference.fa.fai"},
)

SEQUENCE_DICTIONARY = CommandTemplate(
    tool="gatk",
    args=("CreateSequenceDictionary", "-R", "{reference_fasta}", "-O", "{reference_dict}"),
    outputs={"reference_dict": "reference.dict"},
)


# ═══════════════════════════════════════════════════════════════
#  VCF preprocessing
# ═══════════════════════════════════════════════════════════════

NORMALIZE = CommandTemplate(
    tool="bcftools",
    args=("norm", "-m", "-any", "-Oz", "--write-index=tbi", "-o", "{normalized_vcf}", "{input_vcf}"),
    outputs={"normalized_vcf": "normalized.vcf.gz"},
)

GENOTYPE_GVCF = CommandTemplate(
    tool="gatk",
    args=(
        "GenotypeGVCFs",
        "-R", "{reference_fasta}",
        "-V", "{normalized_vcf}",
        "-O", "{called_vcf}",
    ),
    outputs={"called_vcf": "called.vcf.gz"},
)

RENAME_CHROMOSOMES = CommandTemplate(
    tool="bcftools",
    args=(
        "annotate", "--rename-chrs", "{chromosome_map}",
        "-Oz", "--write-index=tbi", "-o", "{renamed_vcf}", "{called_vcf}",
    ),
    outputs={"renamed_vcf": "renamed.vcf.gz"},
)

RESTRICT_CHROMOSOMES = CommandTemplate(
    tool="bcftools",
    args=(
        "view", "-t", "{allowed_chromosomes}",
        "-Oz", "--write-index=tbi", "-o", "{restricted_vcf}", "{renamed_vcf}",
    ),
    outputs={"restricted_vcf": "restricted.vcf.gz"},
)

ANNOTATE_IDS = CommandTemplate(
    tool="bcftools",
    args=(
        "annotate", "-a", "{dbsnp_vcf}", "-c", "ID",
        "-Oz", "--write-index=tbi", "-o", "{id_vcf}", "{restricted_vcf}",
    ),
    outputs={"id_vcf": "annotated_ids.vcf.gz"},
)

QUALITY_FILTER = CommandTemplate(
    tool="bcftools",
    args=("view", "-f", "PASS", "-Oz", "--write-index=tbi", "-o", "{filtered_vcf}", "{id_vcf}"),
    outputs={"filtered_vcf": "filtered.vcf.gz"},
)


# ═══════════════════════════════════════════════════════════════
#  Phenotype and frequency branches
# ═══════════════════════════════════════════════════════════════

HPO_SIMILARITY = CommandTemplate(
    tool="hpo_similarity",
    args=(
        "--hpo", "{input_hpo}",
        "--reference-dir", "{reference_directory}",
        "--out", "{hpo_similarity_scores}",
    ),
    outputs={"hpo_similarity_scores": "hpo_similarity.tsv"},
)

PHRANK = CommandTemplate(
    tool="phrank",
    args=(
        "--vcf", "{filtered_vcf}",
        "--hpo", "{input_hpo}",
        "--genome", "{reference_version}",
        "--reference-dir", "{reference_directory}",
        "--out", "{phrank_scores}",
    ),
    outputs={"phrank_scores": "phrank.tsv"},
)

FREQUENCY_FILTER = CommandTemplate(
    tool="frequency_filter",
    args=(
        "--vcf", "{filtered_vcf}",
        "--genome", "{reference_version}",
        "--reference-dir", "{reference_directory}",
        "--out", "{rare_vcf}",
    ),
    outputs={"rare_vcf": "rare.vcf.gz"},
)


# ═══════════════════════════════════════════════════════════════
#  Per-chromosome annotation and scoring
# ═══════════════════════════════════════════════════════════════

VEP_ANNOTATE = CommandTemplate(
    tool="vep",
    args=(
        "--input_file", "{shard_vcf}",
        "--format", "vcf",
        "--vcf",
        "--compress_output", "bgzip",
        "--offline",
        "--assembly", "{assembly}",
        "--fasta", "{reference_fasta}",
        "--dir_cache", "{vep_cache}",
        "--output_file", "{annotated_vcf}",
    ),
    outputs={"annotated_vcf": "annotated.vcf.gz"},
)

FEATURE_SCORING = CommandTemplate(
    tool="feature_scoring",
    args=(
        "--vcf", "{annotated_vcf}",
        "--phrank", "{phrank_scores}",
        "--hpo-similarity", "{hpo_similarity_scores}",
        "--genome", "{reference_version}",
        "--reference-dir", "{reference_directory}",
        "--annotation-out", "{annotation_table}",
        "--matrix-out", "{feature_matrix}",
    ),
    outputs={"annotation_table": "annotation.tsv.gz", "feature_matrix": "features.tsv"},
)

PREDICT = CommandTemplate(
    tool="prediction",
    args=(
        "--features", "{feature_matrix}",
        "--reference-dir", "{reference_directory}",
        "--prediction-out", "{prediction_matrix}",
        "--confidence-out", "{confidence_scores}",
    ),
    outputs={"prediction_matrix": "prediction.tsv", "confidence_scores": "confidence.tsv"},
)
