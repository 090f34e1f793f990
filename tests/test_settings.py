"""
Tests for TOML settings loading.
"""

from pathlib import Path

from qsensorlog.util.settings import Settings, load_settings


def write_config(tmp_path, text: str) -> Path:
    path = tmp_path / "qsensorlog.toml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadSettings:

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "nope.toml")
        assert settings == Settings()
        assert settings.surface.baud == 9600
        assert settings.inwater.api_url == "http://blueos.local:9150"
        assert settings.recording.storage_path == Path("recordings")

    def test_full_file(self, tmp_path):
        path = write_config(
            tmp_path,
            """
[surface]
port = "/dev/ttyUSB1"
baud = 19200
poll_hz = 4

[inwater]
api_url = "http://10.0.0.5:9150"

[recording]
storage_path = "/data/rec"
mission = "lake"
rate_hz = 250
roll_interval_s = 30.5

[logging]
level = "debug"
""",
        )

        settings = load_settings(path)

        assert settings.surface.port == "/dev/ttyUSB1"
        assert settings.surface.baud == 19200
        assert settings.surface.poll_hz == 4.0
        assert settings.inwater.api_url == "http://10.0.0.5:9150"
        assert settings.recording.storage_path == Path("/data/rec")
        assert settings.recording.mission == "lake"
        assert settings.recording.rate_hz == 250.0
        assert settings.recording.roll_interval_s == 30.5
        assert settings.log_level == "DEBUG"

    def test_wrong_types_fall_back(self, tmp_path):
        path = write_config(
            tmp_path,
            """
[surface]
port = 5
baud = true
poll_hz = "fast"

[recording]
rate_hz = false
mission = ["a"]
""",
        )

        settings = load_settings(path)

        assert settings.surface.port is None
        assert settings.surface.baud == 9600
        assert settings.surface.poll_hz is None
        assert settings.recording.rate_hz == 500
        assert settings.recording.mission == "default"

    def test_non_table_sections_are_ignored(self, tmp_path):
        path = write_config(tmp_path, 'surface = "oops"\n')
        assert load_settings(path).surface.port is None
