"""Tests for configuration loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from slopedin.config import Config, FeedConfig, InferenceConfig, find_config_file, load_config


class TestDefaults:
    def test_defaults_match_detector(self):
        config = Config()

        assert config.feed.min_text_length == 50
        assert config.feed.debounce_seconds == pytest.approx(0.3)
        assert config.inference.max_text_length == 1500
        assert config.inference.top_k == 2
        assert config.inference.fake_label == "fake"
        assert config.inference.ai_threshold == pytest.approx(0.5)
        assert config.relay.target == "inference"
        assert config.preferences.default_enabled is True

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            InferenceConfig(ai_threshold=1.5)
        with pytest.raises(ValidationError):
            FeedConfig(patterns=[])
        with pytest.raises(ValidationError):
            InferenceConfig(device="tpu")


class TestSources:
    def test_from_yaml(self, tmp_path):
        path = tmp_path / "slopedin.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "feed": {"min_text_length": 80},
                    "inference": {"device": "cpu", "max_text_length": 512},
                    "monitoring": {"log_level": "DEBUG"},
                }
            )
        )

        config = Config.from_yaml(path)

        assert config.feed.min_text_length == 80
        assert config.inference.device == "cpu"
        assert config.inference.max_text_length == 512
        assert config.monitoring.log_level == "DEBUG"

    def test_empty_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "slopedin.yaml"
        path.write_text("")

        assert Config.from_yaml(path).feed.min_text_length == 50

    def test_missing_yaml(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "nope.yaml")

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SLOPEDIN_FEED__MIN_TEXT_LENGTH", "120")
        monkeypatch.setenv("SLOPEDIN_INFERENCE__DEVICE", "cpu")

        config = Config()

        assert config.feed.min_text_length == 120
        assert config.inference.device == "cpu"

    def test_find_and_load_from_working_directory(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert find_config_file() is None
        assert load_config().feed.min_text_length == 50

        Path(tmp_path / "slopedin.yml").write_text("feed:\n  min_text_length: 64\n")

        assert find_config_file() == tmp_path / "slopedin.yml"
        assert load_config().feed.min_text_length == 64

    def test_log_file_parent_created(self, tmp_path):
        log_file = tmp_path / "logs" / "nested" / "slopedin.log"
        config = Config(monitoring={"log_file": str(log_file)})

        assert config.monitoring.log_file == str(log_file)
        assert log_file.parent.is_dir()
