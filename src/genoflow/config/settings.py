"""
GenoFlow Configuration Settings.

Validated configuration using pydantic-settings. Environment variables use the
``GENOFLOW_`` prefix (``GENOFLOW_TOOLS_`` / ``GENOFLOW_REFERENCE_`` for the
nested groups); a ``.env`` file in the working directory is also read.
"""

import shlex
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ReferenceVersion = Literal["hg19", "hg38"]
REFERENCE_VERSIONS: tuple[str, ...] = ("hg19", "hg38")


class ToolSettings(BaseSettings):
    """Command prefixes of the external collaborators.

    Each value is a command line prefix, split with shell rules, so a tool can
    be a plain executable (``bcftools``) or an interpreter plus script
    (``python3 /opt/scripts/phrank.py``).
    """

    bcftools: str = Field(default="bcftools")
    samtools: str = Field(default="samtools")
    gatk: str = Field(default="gatk")
    vep: str = Field(default="vep")
    phrank: str = Field(default="phrank")
    hpo_similarity: str = Field(default="hpo-similarity")
    frequency_filter: str = Field(default="gnomad-filter")
    feature_scoring: str = Field(default="feature-score")
    prediction: str = Field(default="predict-variants")

    # Execution
    container_image: str | None = Field(default=None, description="Run tools inside this image")
    timeout_seconds: int = Field(default=6 * 3600, ge=1)
    diagnostic_lines: int = Field(default=40, ge=1, le=10000)

    model_config = SettingsConfigDict(env_prefix="GENOFLOW_TOOLS_")

    def command(self, tool: str) -> list[str]:
        """Return the argv prefix configured for ``tool``."""
        value = getattr(self, tool, None)
        if not isinstance(value, str) or not value.strip():
            raise KeyError(f"No command configured for tool: {tool}")
        return shlex.split(value)


class ReferenceSettings(BaseSettings):
    """Reference genome download and cache configuration."""

    hg19_url: str = Field(
        default="https://hgdownload.soe.ucsc.edu/goldenPath/hg19/bigZips/hg19.fa.gz"
    )
    hg38_url: str = Field(
        default="https://hgdownload.soe.ucsc.edu/goldenPath/hg38/bigZips/hg38.fa.gz"
    )
    download_timeout: int = Field(default=600, ge=1)
    chunk_size: int = Field(default=1024 * 1024, ge=1024)

    model_config = SettingsConfigDict(env_prefix="GENOFLOW_REFERENCE_")

    def url_for(self, version: str) -> str:
        return getattr(self, f"{version}_url")


class Settings(BaseSettings):
    """Main application settings."""

    # Storage
    work_root: Path = Field(default=Path("genoflow_work"))

    # Scheduling
    max_workers: int = Field(default=4, ge=1, le=256)
    shard_workers: int = Field(default=4, ge=1, le=256)
    resume: bool = Field(default=False, description="Skip stages whose outputs already exist")

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = False

    # Run parameters consumed by ``python -m genoflow``
    input_vcf: str | None = None
    input_hpo: str | None = None
    reference_directory: str | None = None
    reference_version: str | None = None
    run_id: str | None = None
    output_directory: str | None = None
    chromosome_map: str | None = None

    # Subsettings
    tools: ToolSettings = Field(default_factory=ToolSettings)
    reference: ReferenceSettings = Field(default_factory=ReferenceSettings)

    model_config = SettingsConfigDict(
        env_prefix="GENOFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return v

    def run_parameters(self) -> dict[str, str | None]:
        """Parameter mapping handed to the validator."""
        return {
            "input_vcf": self.input_vcf,
            "input_hpo": self.input_hpo,
            "reference_directory": self.reference_directory,
            "reference_version": self.reference_version,
            "run_id": self.run_id,
            "output_directory": self.output_directory,
            "chromosome_map": self.chromosome_map,
        }


class RunConfig(BaseModel):
    """Validated parameters of a single run, passed explicitly to every stage."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    input_vcf: Path
    input_hpo: Path
    reference_directory: Path
    reference_version: ReferenceVersion
    output_directory: Path
    chromosome_map: Path | None = None

    @property
    def results_directory(self) -> Path:
        return self.output_directory / self.run_id


@lru_cache
def get_settings() -> Settings:
    """Get settings instance (read once from the environment)."""
    return Settings()
