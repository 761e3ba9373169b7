"""
Tests for the pipeline orchestrator, configuration, storage and command line.
"""

import json
import os
import time
from pathlib import Path

import pytest

from registry_filler.config import get_default_config, apply_env_overrides, load_config
from registry_filler.main import RegistryProcessingPipeline, main
from registry_filler.storage import LocalDocumentStore
from registry_filler.verify_document import read_field_values


@pytest.fixture
def pipeline():
    return RegistryProcessingPipeline({'log_level': 'DEBUG'})


class TestSingleRequest:

    def test_successful_request_writes_outputs(self, pipeline, request_dir, tmp_path):
        output_dir = tmp_path / "output"
        result = pipeline.process_single_request(str(request_dir), str(output_dir))

        assert result['success'], result['errors']
        assert result['request_id'] == "REQ-001"
        assert result['filled_count'] > 0
        assert result['verification']['mismatches'] == 0

        request_output = output_dir / "REQ-001"
        for name in ("filled_document.pdf", "verification_report.json", "normalized_data.json",
                     "field_mapping_log.json", "processing_summary.json"):
            assert (request_output / name).exists(), name

        stored = result['stored_document']
        assert stored['url'].startswith("file://")
        values = read_field_values((request_output / "filled_document.pdf").read_bytes())
        assert values['nuip'] == "V2A0001156"

    def test_mapping_overrides_file_used(self, pipeline, request_dir, tmp_path, make_template):
        (request_dir / "template.pdf").write_bytes(make_template(["box_17"]))
        (request_dir / "mappings.json").write_text(json.dumps({"tomo": ["box_17"]}), encoding="utf-8")
        (request_dir / "extracted_data.json").write_text(
            json.dumps({"nombres": "ANA", "tomo": "44"}), encoding="utf-8"
        )

        result = pipeline.process_single_request(str(request_dir), str(tmp_path / "output"))
        assert result['success']
        stored = read_field_values(Path(result['stored_document']['path']).read_bytes())
        assert stored == {"box_17": "44"}

    def test_log_records_tagged_with_request_id(self, request_dir, tmp_path):
        log_file = tmp_path / "logs" / "run.log"
        pipeline = RegistryProcessingPipeline({'log_file': str(log_file)})
        pipeline.process_single_request(str(request_dir), str(tmp_path / "output"))
        pipeline.logger.info("after the request")

        lines = log_file.read_text(encoding="utf-8").splitlines()
        assert any("| REQ-001 |" in line and "Processing request" in line for line in lines)
        assert any("| - |" in line and "after the request" in line for line in lines)

    def test_missing_template_logs_error(self, pipeline, tmp_path):
        folder = tmp_path / "REQ-404"
        folder.mkdir()
        (folder / "extracted_data.json").write_text(json.dumps({"nombres": "ANA"}), encoding="utf-8")

        output_dir = tmp_path / "output"
        result = pipeline.process_single_request(str(folder), str(output_dir))

        assert not result['success']
        assert "Template not found" in result['errors'][0]
        error_log = (output_dir / "REQ-404" / "error_log.txt").read_text(encoding="utf-8")
        assert "Traceback" in error_log
        assert (output_dir / "REQ-404" / "processing_summary.json").exists()

    def test_empty_extracted_data_fails(self, pipeline, request_dir, tmp_path):
        (request_dir / "extracted_data.json").write_text("{}", encoding="utf-8")
        result = pipeline.process_single_request(str(request_dir), str(tmp_path / "output"))
        assert not result['success']
        assert "empty object" in result['errors'][0]


class TestGenerateDocument:

    def test_verification_can_be_disabled(self, birth_certificate_template, sample_extraction):
        pipeline = RegistryProcessingPipeline({'verify_after_fill': False})
        generation = pipeline.generate_document(birth_certificate_template, sample_extraction)
        assert "verification" not in generation
        assert generation['normalized_data']['nuip_resolved'] == "V2A0001156"

    def test_unfillable_template_raises(self, pipeline):
        with pytest.raises(RuntimeError):
            pipeline.generate_document(b"%PDF-1.4 broken", {"nombres": "ANA"})

    def test_empty_data_raises(self, pipeline, birth_certificate_template):
        with pytest.raises(ValueError):
            pipeline.generate_document(birth_certificate_template, {})


def test_batch_counts_successes_and_failures(pipeline, request_dir, tmp_path):
    broken = request_dir.parent / "REQ-002"
    broken.mkdir()
    (broken / "extracted_data.json").write_text(json.dumps({"nombres": "ANA"}), encoding="utf-8")
    (broken / "template.pdf").write_bytes(b"not a pdf")

    output_dir = tmp_path / "output"
    summary = pipeline.process_batch(str(request_dir.parent), str(output_dir))

    stats = summary['statistics']
    assert stats['total_requests'] == 2
    assert stats['successful_requests'] == 1
    assert stats['failed_requests'] == 1
    assert stats['success_rate'] == 50.0
    assert [r['request_id'] for r in summary['request_results']] == ["REQ-001", "REQ-002"]
    assert (output_dir / "batch_summary.json").exists()
    assert (output_dir / "REQ-002" / "error_log.txt").exists()


def test_batch_with_no_requests(pipeline, tmp_path):
    summary = pipeline.process_batch(str(tmp_path), str(tmp_path / "output"))
    assert summary['statistics']['total_requests'] == 0
    assert summary['request_results'] == []


class TestConfig:

    def test_defaults(self):
        config = get_default_config()
        assert config['font_size'] == 10
        assert config['signed_url_ttl_seconds'] == 365 * 24 * 60 * 60
        assert config['max_correction_attempts'] == 1

    def test_env_values_converted(self):
        config = apply_env_overrides(get_default_config(), {
            "REGISTRY_FILLER_FONT_SIZE": "12",
            "REGISTRY_FILLER_AUTO_CORRECT": "false",
            "REGISTRY_FILLER_LOG_FILE": "logs/run.log",
        })
        assert config['font_size'] == 12
        assert config['auto_correct'] is False
        assert config['log_file'] == "logs/run.log"

    def test_invalid_env_value_ignored(self):
        config = apply_env_overrides(get_default_config(), {"REGISTRY_FILLER_FONT_SIZE": "large"})
        assert config['font_size'] == 10

    def test_file_then_environment(self, tmp_path, monkeypatch):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"font_size": 9, "storage_root": "docs"}), encoding="utf-8")
        monkeypatch.setenv("REGISTRY_FILLER_STORAGE_ROOT", "elsewhere")

        config = load_config(str(config_path))
        assert config['font_size'] == 9
        assert config['storage_root'] == "elsewhere"

    def test_unreadable_file_falls_back_to_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "missing.json"))
        assert config['font_size'] == get_default_config()['font_size']


class TestLocalDocumentStore:

    @pytest.fixture
    def store(self, tmp_path):
        return LocalDocumentStore({'storage_root': str(tmp_path / "store"), 'signed_url_ttl_seconds': 3600})

    def test_missing_template(self, store, tmp_path):
        with pytest.raises(FileNotFoundError):
            store.fetch_template(str(tmp_path / "nope.pdf"))

    def test_empty_template(self, store, tmp_path):
        empty = tmp_path / "empty.pdf"
        empty.write_bytes(b"")
        with pytest.raises(ValueError):
            store.fetch_template(str(empty))

    def test_overrides(self, store, tmp_path):
        assert store.load_mapping_overrides(str(tmp_path / "none.json")) == {}
        assert store.load_mapping_overrides(None) == {}

        bad = tmp_path / "bad.json"
        bad.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(ValueError):
            store.load_mapping_overrides(str(bad))

        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError):
            store.load_mapping_overrides(str(broken))

    def test_store_generated(self, store):
        before = int(time.time())
        stored = store.store_generated("REQ-9", b"%PDF-1.4 data", "out.pdf")
        assert os.path.exists(stored['path'])
        assert stored['url'].startswith("file://")
        assert stored['url'].endswith("/REQ-9/out.pdf")
        assert stored['expires_at'] >= before + 3600


class TestCommandLine:

    def test_normalize(self, tmp_path, sample_extraction):
        data_path = tmp_path / "data.json"
        data_path.write_text(json.dumps(sample_extraction), encoding="utf-8")
        out_path = tmp_path / "normalized.json"

        main(["normalize", "-d", str(data_path), "-o", str(out_path)])

        written = json.loads(out_path.read_text(encoding="utf-8"))
        assert written['normalized_data']['nuip_resolved'] == "V2A0001156"
        assert written['validation']['is_valid']

    def test_generate(self, tmp_path, birth_certificate_template, sample_extraction):
        data_path = tmp_path / "data.json"
        data_path.write_text(json.dumps(sample_extraction), encoding="utf-8")
        template_path = tmp_path / "template.pdf"
        template_path.write_bytes(birth_certificate_template)
        out_path = tmp_path / "out" / "filled.pdf"

        main(["generate", "-d", str(data_path), "-t", str(template_path), "-o", str(out_path)])

        assert read_field_values(out_path.read_bytes())['reg_names'] == "MARIA JOSE"

    def test_inspect(self, tmp_path, make_template):
        template_path = tmp_path / "template.pdf"
        template_path.write_bytes(make_template(["reg_names", "mystery_box"]))
        out_path = tmp_path / "inspect.json"

        main(["inspect", "-t", str(template_path), "-o", str(out_path)])

        report = json.loads(out_path.read_text(encoding="utf-8"))
        assert report['mappings']['nombres'] == ["reg_names"]
        assert report['unmapped_pdf_fields'] == ["mystery_box"]
        assert report['fields'][0] == {"name": "reg_names", "type": "text"}

    def test_missing_request_exits_nonzero(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["batch", "-r", str(tmp_path / "missing"), "-o", str(tmp_path / "out")])
        assert exc_info.value.code == 1

    def test_unreadable_data_exits_nonzero(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{oops", encoding="utf-8")
        with pytest.raises(SystemExit) as exc_info:
            main(["normalize", "-d", str(bad)])
        assert exc_info.value.code == 1
