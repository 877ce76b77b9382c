"""
Run one pipeline job.

Parameters come from ``GENOFLOW_*`` environment variables or ``.env``::

    GENOFLOW_INPUT_VCF=patient.vcf.gz GENOFLOW_INPUT_HPO=patient.hpo \
    GENOFLOW_REFERENCE_DIRECTORY=/data/ref GENOFLOW_REFERENCE_VERSION=hg38 \
    python -m genoflow

Exit status: 0 on success, 1 if a stage failed, 2 on invalid parameters.
"""

import sys

from .config.settings import get_settings
from .core.logging import setup_logging
from .pipeline.orchestrator import PipelineOrchestrator


def main() -> int:
    settings = get_settings()
    setup_logging(level=settings.log_level, json_format=settings.log_json)

    result = PipelineOrchestrator(settings).run_pipeline(settings.run_parameters())
    print(result.message, file=sys.stderr if result.exit_code else sys.stdout)
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
