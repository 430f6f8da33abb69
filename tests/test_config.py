"""
Unit tests for configuration loading and the batch CLI.
"""

import pytest
import shutil
import tempfile
import sys
from pathlib import Path

import yaml

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from provider_trust.config import get_default_config, load_config, merge_configs, validate_config
from provider_trust.errors import ConfigurationError
from provider_trust.pipeline.run_batch import BatchRunner, build_parser, main
from provider_trust.storage.database import ProviderStore


class TestConfig:
    """Test cases for configuration handling."""

    def setup_method(self):
        """Setup test fixtures."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Cleanup test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_config(self, content: str) -> str:
        path = Path(self.temp_dir) / "provider_trust.yaml"
        path.write_text(content)
        return str(path)

    def test_defaults_are_valid(self):
        validate_config(get_default_config())

    def test_merge_configs(self):
        merged = merge_configs({"a": {"b": 1, "c": 2}, "d": 3}, {"a": {"c": 5}})
        assert merged == {"a": {"b": 1, "c": 5}, "d": 3}

    def test_missing_file_uses_defaults(self):
        config = load_config(str(Path(self.temp_dir) / "missing.yaml"))
        assert config["confidence"]["verification_ttl_months"] == 6
        assert config["matching"]["accept_threshold"] == 0.80

    def test_file_overrides(self):
        path = self.write_config(yaml.safe_dump({"geocoding": {"batch_size": 10}}))
        config = load_config(path)
        assert config["geocoding"]["batch_size"] == 10
        assert config["geocoding"]["cost_per_1000"] == 5.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "env-key")
        monkeypatch.setenv("PROVIDER_TRUST_DB", "/tmp/elsewhere.db")
        config = load_config(str(Path(self.temp_dir) / "missing.yaml"))
        assert config["geocoding"]["api_key"] == "env-key"
        assert config["database"]["path"] == "/tmp/elsewhere.db"

    def test_invalid_thresholds(self):
        path = self.write_config(yaml.safe_dump({"matching": {"accept_threshold": 0.6,
                                                              "ambiguous_threshold": 0.7}}))
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_invalid_ttl(self):
        config = get_default_config()
        config["confidence"]["verification_ttl_months"] = 0
        with pytest.raises(ConfigurationError):
            validate_config(config)

    def test_unparseable_file(self):
        path = self.write_config("registry: [unclosed")
        with pytest.raises(ConfigurationError):
            load_config(path)


class TestBatchCli:
    """Test cases for the batch entry point."""

    def setup_method(self):
        """Setup test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = str(Path(self.temp_dir) / "cli.db")
        self.config_path = str(Path(self.temp_dir) / "missing.yaml")

    def teardown_method(self):
        """Cleanup test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_main(self, *args) -> int:
        with pytest.raises(SystemExit) as exc:
            main(["--config", self.config_path, "--db", self.db_path, *args])
        return exc.value.code

    def test_parser_defaults_to_dry_run(self):
        args = build_parser().parse_args(["geocode", "--state", "MD"])
        assert args.apply is False
        assert args.state == "MD"

    def test_cleanup_dry_run(self):
        assert self.run_main("cleanup") == 0

    def test_geocode_dry_run_needs_no_key(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
        assert self.run_main("geocode") == 0

    def test_geocode_apply_without_key_fails(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
        assert self.run_main("geocode", "--apply") == 1

    def test_import_missing_file_fails(self):
        assert self.run_main("import", str(Path(self.temp_dir) / "nope.csv")) == 1

    def test_runner_jobs(self):
        """Test the runner against an empty store."""
        runner = BatchRunner(self.config_path, self.db_path)
        try:
            assert runner.recalculate_confidence(dry_run=False).processed == 0
            assert runner.match_plans(dry_run=True).networks_inspected == 0
            assert runner.cleanup(dry_run=True).providers == 0
            runner.export(str(Path(self.temp_dir) / "review"))
            assert (Path(self.temp_dir) / "review" / "discrepancies.csv").exists()
        finally:
            runner.close()

    def test_export(self):
        ProviderStore(self.db_path).close()
        assert self.run_main("export", str(Path(self.temp_dir) / "out")) == 0
        assert (Path(self.temp_dir) / "out" / "import_conflicts.csv").exists()


if __name__ == "__main__":
    pytest.main([__file__])
