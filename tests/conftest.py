"""
Pytest configuration for GenoFlow tests
This file configures paths and fixtures for all tests
"""
import gzip
import shlex
import sys
from pathlib import Path

import pytest

# Get the project root directory
PROJECT_ROOT = Path(__file__).parent.parent
SRC_DIR = PROJECT_ROOT / "src"
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Add project directories to Python path
sys.path.insert(0, str(SRC_DIR))

from genoflow.config.settings import Settings, ToolSettings  # noqa: E402
from genoflow.storage.artifacts import ArtifactStore  # noqa: E402

FAKE_TOOLS = FIXTURES_DIR / "fake_tools.py"

VCF_HEADER = (
    "##fileformat=VCFv4.2\n"
    "##FILTER=<ID=PASS,Description=\"All filters passed\">\n"
    "##contig=<ID=chr1,length=248956422>\n"
    "##contig=<ID=chr2,length=242193529>\n"
    "#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\tFORMAT\tSAMPLE1\n"
)


# Configure pytest
def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "e2e: End-to-end tests")
    config.addinivalue_line("markers", "slow: Slow tests")


def vcf_record(chrom, pos, ref="A", alt="G", filt="PASS", info="DP=20"):
    return f"{chrom}\t{pos}\t.\t{ref}\t{alt}\t50\t{filt}\t{info}\tGT:GQ\t0/1:99\n"


def write_vcf(path: Path, records, header: str = VCF_HEADER) -> Path:
    """Write a VCF (gzipped when the name ends in .gz)."""
    text = header + "".join(records)
    if str(path).endswith(".gz"):
        with gzip.open(path, "wt") as f:
            f.write(text)
    else:
        path.write_text(text)
    return path


def fake_tool_settings(**overrides) -> ToolSettings:
    """ToolSettings pointing every tool at the fake tools script."""
    def prefix(name):
        return shlex.join([sys.executable, str(FAKE_TOOLS), name])

    values = {
        "bcftools": prefix("bcftools"),
        "samtools": prefix("samtools"),
        "gatk": prefix("gatk"),
        "vep": prefix("vep"),
        "phrank": prefix("phrank"),
        "hpo_similarity": prefix("hpo_similarity"),
        "frequency_filter": prefix("frequency_filter"),
        "feature_scoring": prefix("feature_scoring"),
        "prediction": prefix("prediction"),
        "timeout_seconds": 120,
    }
    values.update(overrides)
    return ToolSettings(**values)


# Shared fixtures
@pytest.fixture(scope="session")
def project_root():
    """Return project root directory"""
    return PROJECT_ROOT


@pytest.fixture
def temp_dir(tmp_path):
    """Create a temporary directory for test files"""
    return tmp_path


@pytest.fixture
def store(tmp_path):
    """Artifact store under a temporary work root"""
    return ArtifactStore(tmp_path / "work")


@pytest.fixture
def sample_vcf_content():
    """Sample VCF file content for testing"""
    return VCF_HEADER + "".join(
        [
            vcf_record("chr1", 100),
            vcf_record("chr1", 200, "C", "T"),
            vcf_record("chr2", 300, "ATCG", "A"),
        ]
    )


@pytest.fixture
def reference_directory(tmp_path):
    """Reference data directory with a small local hg38 sequence"""
    ref_dir = tmp_path / "refdata"
    (ref_dir / "hg38").mkdir(parents=True)
    (ref_dir / "hg38" / "hg38.fa").write_text(
        ">chr1\nACGTACGTACGT\n>chr2\nTTGGCCAA\n>chrUn_KI270302v1\nNNNN\n>chrM\nGATC\n"
    )
    return ref_dir


@pytest.fixture
def run_inputs(tmp_path, reference_directory):
    """Valid parameter set with a ten-record, two-chromosome VCF"""
    records = [
        vcf_record("chr1", 1000),
        vcf_record("chr1", 2000, "C", "T"),
        vcf_record("chr1", 3000, "G", "A", filt="LowQual"),
        vcf_record("chr1", 4000, "T", "C", info="DP=30;AF=0.25"),
        vcf_record("chr1", 5000, "A", "C"),
        vcf_record("chr2", 1500),
        vcf_record("chr2", 2500, "G", "T"),
        vcf_record("chr2", 3500, "C", "G", filt="LowQual"),
        vcf_record("chr2", 4500, "T", "A"),
        vcf_record("chr2", 5500, "A", "T"),
    ]
    vcf = write_vcf(tmp_path / "patient.vcf", records)
    hpo = tmp_path / "patient.hpo"
    hpo.write_text("HP:0001250\nHP:0004322\n")
    return {
        "input_vcf": str(vcf),
        "input_hpo": str(hpo),
        "reference_directory": str(reference_directory),
        "reference_version": "hg38",
        "run_id": "patient_run",
        "output_directory": str(tmp_path / "results"),
    }


@pytest.fixture
def fake_settings(tmp_path):
    """Settings running every external tool through the fake tools script"""
    return Settings(
        work_root=tmp_path / "work",
        max_workers=4,
        shard_workers=2,
        tools=fake_tool_settings(),
    )
