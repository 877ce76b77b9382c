"""
Unit Tests for the Reference Cache
"""

import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from genoflow.config.settings import ReferenceSettings
from genoflow.core.exceptions import ReferenceBuildError, ToolFailure
from genoflow.pipeline.reference import ReferenceBuild, ReferenceBuilder, ReferenceCache


class CountingBuilder:
    """Builder double that records how often it ran."""

    def __init__(self, delay=0.0, fail=False):
        self.calls = 0
        self.delay = delay
        self.fail = fail
        self._lock = threading.Lock()

    def __call__(self, version, staging):
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        if self.fail:
            raise ToolFailure("samtools", 1, "faidx: truncated file")
        build = ReferenceBuild.in_directory(version, staging)
        build.fasta.write_text(">chr1\nACGT\n")
        build.index.write_text("chr1\t4\t6\t4\t5\n")
        build.dictionary.write_text("@HD\tVN:1.6\n")


class TestReferenceCache:
    """Tests for ReferenceCache"""

    def test_build_once(self, store):
        builder = CountingBuilder()
        cache = ReferenceCache(store, builder)

        first = cache.get_or_build("hg38")
        second = cache.get_or_build("hg38")

        assert builder.calls == 1
        assert first == second
        assert first.is_complete()
        assert first.fasta.parent == store.reference_dir("hg38")

    def test_versions_are_independent(self, store):
        builder = CountingBuilder()
        cache = ReferenceCache(store, builder)

        hg19 = cache.get_or_build("hg19")
        hg38 = cache.get_or_build("hg38")

        assert builder.calls == 2
        assert hg19.fasta != hg38.fasta

    def test_concurrent_callers_share_one_build(self, store):
        builder = CountingBuilder(delay=0.2)
        cache = ReferenceCache(store, builder)
        results = []
        errors = []

        def worker():
            try:
                results.append(cache.get_or_build("hg38"))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert not errors
        assert builder.calls == 1
        assert len(results) == 8
        assert len(set(results)) == 1

    def test_build_survives_new_cache_instance(self, store):
        ReferenceCache(store, CountingBuilder()).get_or_build("hg38")

        builder = CountingBuilder()
        build = ReferenceCache(store, builder).get_or_build("hg38")

        assert builder.calls == 0
        assert build.is_complete()

    def test_unknown_version(self, store):
        builder = CountingBuilder()
        with pytest.raises(ReferenceBuildError) as exc_info:
            ReferenceCache(store, builder).get_or_build("hg18")
        assert builder.calls == 0
        assert exc_info.value.version == "hg18"

    def test_failed_build_leaves_nothing(self, store):
        cache = ReferenceCache(store, CountingBuilder(fail=True))

        with pytest.raises(ReferenceBuildError) as exc_info:
            cache.get_or_build("hg38")

        assert "truncated" in str(exc_info.value) or "samtools" in str(exc_info.value)
        assert cache.cached("hg38") is None
        assert not store.reference_dir("hg38").exists()
        leftovers = [p for p in store.references_root.iterdir() if p.is_dir()]
        assert leftovers == []

    def test_incomplete_builder_output_rejected(self, store):
        def partial(version, staging):
            (staging / f"{version}.fa").write_text(">chr1\nA\n")

        with pytest.raises(ReferenceBuildError) as exc_info:
            ReferenceCache(store, partial).get_or_build("hg38")
        assert "hg38.fa.fai" in str(exc_info.value)

    def test_retry_after_failure(self, store):
        failing = CountingBuilder(fail=True)
        with pytest.raises(ReferenceBuildError):
            ReferenceCache(store, failing).get_or_build("hg38")

        working = CountingBuilder()
        build = ReferenceCache(store, working).get_or_build("hg38")
        assert working.calls == 1
        assert build.is_complete()


class TestReferenceBuilder:
    """Tests for the default build pipeline"""

    @staticmethod
    def fake_invoke(template, inputs, scratch, params=None):
        scratch.mkdir(parents=True, exist_ok=True)
        outputs = {}
        for name, filename in template.outputs.items():
            path = scratch / filename
            path.write_text(f"{name}\n")
            outputs[name] = path
        return outputs

    def test_uses_local_sequence(self, store, reference_directory):
        adapter = MagicMock()
        adapter.invoke.side_effect = self.fake_invoke
        builder = ReferenceBuilder(adapter, ReferenceSettings(), reference_directory)

        with patch("genoflow.pipeline.reference.requests.get") as mock_get:
            build = ReferenceCache(store, builder).get_or_build("hg38")
            mock_get.assert_not_called()

        assert build.is_complete()
        tools = [call.args[0].tool for call in adapter.invoke.call_args_list]
        assert tools == ["samtools", "samtools", "gatk"]

        restrict_inputs = adapter.invoke.call_args_list[0].args[1]
        assert restrict_inputs["source_fasta"].name == "hg38.source.fa"
        assert restrict_inputs["source_fasta"].parent != reference_directory / "hg38"

    def test_region_file_lists_canonical_chromosomes(self, tmp_path, reference_directory):
        seen = {}

        def capture(template, inputs, scratch, params=None):
            if "region_file" in inputs:
                seen["regions"] = Path(inputs["region_file"]).read_text().split()
            return self.fake_invoke(template, inputs, scratch, params)

        adapter = MagicMock()
        adapter.invoke.side_effect = capture
        staging = tmp_path / "staging"
        staging.mkdir()

        ReferenceBuilder(adapter, ReferenceSettings(), reference_directory)("hg38", staging)

        expected = [f"chr{i}" for i in range(1, 23)] + ["chrX", "chrY", "chrM"]
        assert seen["regions"] == expected
        assert sorted(p.name for p in staging.iterdir()) == ["hg38.dict", "hg38.fa", "hg38.fa.fai", "regions.txt"]

    def test_reference_directory_left_untouched(self, store, reference_directory):
        before = sorted(p.relative_to(reference_directory) for p in reference_directory.rglob("*"))

        def faidx_beside_source(template, inputs, scratch, params=None):
            if "source_fasta" in inputs:
                source = Path(inputs["source_fasta"])
                source.with_name(source.name + ".fai").write_text("chr1\t4\n")
            return self.fake_invoke(template, inputs, scratch, params)

        adapter = MagicMock()
        adapter.invoke.side_effect = faidx_beside_source
        builder = ReferenceBuilder(adapter, ReferenceSettings(), reference_directory)

        build = ReferenceCache(store, builder).get_or_build("hg38")

        assert build.is_complete()
        assert sorted(p.relative_to(reference_directory) for p in reference_directory.rglob("*")) == before
        assert not list(build.fasta.parent.glob("hg38.source.fa*"))

    def test_downloads_when_no_local_sequence(self, tmp_path):
        import gzip

        adapter = MagicMock()
        adapter.invoke.side_effect = self.fake_invoke
        response = MagicMock()
        response.iter_content.return_value = [gzip.compress(b">chr1\nACGT\n")]
        response.__enter__.return_value = response

        staging = tmp_path / "staging"
        staging.mkdir()
        settings = ReferenceSettings(hg19_url="https://example.org/hg19.fa.gz")

        with patch("genoflow.pipeline.reference.requests.get", return_value=response) as mock_get:
            ReferenceBuilder(adapter, settings, tmp_path)("hg19", staging)

        assert mock_get.call_args.args[0] == "https://example.org/hg19.fa.gz"
        assert mock_get.call_args.kwargs["stream"] is True
        source = adapter.invoke.call_args_list[0].args[1]["source_fasta"]
        assert source.name == "hg19.source.fa"
        assert not any(p.name.startswith("hg19.download") for p in staging.iterdir())
