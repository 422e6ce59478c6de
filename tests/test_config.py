"""Tests for configuration loading."""

from pathlib import Path

import pytest

from meet_rtc.config import DEFAULT_CODECS, CodecConfig, Config, MediaConfig

ENV_VARS = [
    "MEET_RTC_HOST",
    "MEET_RTC_PORT",
    "MEET_RTC_SIGNALING_URL",
    "MEDIA_LISTEN_IP",
    "MEDIA_ANNOUNCED_IP",
    "RTC_MIN_PORT",
    "RTC_MAX_PORT",
]


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Empty cwd and home, no meet-rtc environment variables."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(Path, "home", lambda: home)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def load(workdir):
    config = Config()
    config.load()
    return config


class TestDefaults:
    def test_no_sources(self, workdir):
        config = load(workdir)
        assert config.host == "0.0.0.0"
        assert config.port == 5000
        assert config.signaling_url == "ws://localhost:5000"
        assert config.pending_signal_cap == 64
        assert config.media.codecs == DEFAULT_CODECS
        assert config.media.rtc_min_port == 40000


class TestConfigFile:
    def test_cwd_file_is_read(self, workdir):
        (workdir / "meet-rtc.toml").write_text(
            """
[server]
host = "127.0.0.1"
port = 6000
ping_interval = 5

[media]
announced_ip = "203.0.113.7"
rtc_min_port = 41000
rtc_max_port = 41010
codecs = [
    { kind = "audio", mimeType = "audio/opus", clockRate = 48000, channels = 2 },
]
"""
        )
        config = load(workdir)

        assert config.host == "127.0.0.1"
        assert config.port == 6000
        assert config.ping_interval == 5.0
        assert config.media.announced_ip == "203.0.113.7"
        assert (config.media.rtc_min_port, config.media.rtc_max_port) == (41000, 41010)
        assert [c.mime_type for c in config.media.codecs] == ["audio/opus"]

    def test_home_file_used_when_cwd_has_none(self, workdir):
        home_dir = Path.home() / ".meet-rtc"
        home_dir.mkdir()
        (home_dir / "config.toml").write_text('[server]\nport = 7000\n')

        assert load(workdir).port == 7000

    def test_malformed_file_falls_back_to_defaults(self, workdir):
        (workdir / "meet-rtc.toml").write_text("[server\nport = ")
        assert load(workdir).port == 5000

    def test_invalid_number_keeps_default(self, workdir):
        (workdir / "meet-rtc.toml").write_text('[server]\nport = "lots"\n')
        assert load(workdir).port == 5000

    def test_invalid_port_range_keeps_default_media(self, workdir):
        (workdir / "meet-rtc.toml").write_text("[media]\nrtc_min_port = 50000\nrtc_max_port = 40000\n")
        assert load(workdir).media.rtc_min_port == 40000

    def test_invalid_codecs_are_skipped(self, workdir):
        (workdir / "meet-rtc.toml").write_text(
            '[media]\ncodecs = [{ kind = "smell", mimeType = "x/y", clockRate = 1 }]\n'
        )
        assert load(workdir).media.codecs == DEFAULT_CODECS


class TestEnvironment:
    def test_env_overrides_file(self, workdir, monkeypatch):
        (workdir / "meet-rtc.toml").write_text('[server]\nhost = "127.0.0.1"\nport = 6000\n')
        monkeypatch.setenv("MEET_RTC_HOST", "10.1.1.1")
        monkeypatch.setenv("MEET_RTC_PORT", "6500")
        monkeypatch.setenv("MEET_RTC_SIGNALING_URL", "wss://rooms.example.org")

        config = load(workdir)

        assert config.host == "10.1.1.1"
        assert config.port == 6500
        assert config.signaling_url == "wss://rooms.example.org"

    def test_media_env(self, workdir, monkeypatch):
        monkeypatch.setenv("MEDIA_ANNOUNCED_IP", "198.51.100.2")
        monkeypatch.setenv("RTC_MIN_PORT", "42000")
        monkeypatch.setenv("RTC_MAX_PORT", "42100")

        media = load(workdir).media

        assert media.announced_ip == "198.51.100.2"
        assert (media.rtc_min_port, media.rtc_max_port) == (42000, 42100)

    def test_bad_port_range_from_env_is_ignored(self, workdir, monkeypatch):
        monkeypatch.setenv("RTC_MIN_PORT", "0")
        assert load(workdir).media.rtc_min_port == 40000


class TestMediaConfig:
    def test_port_range_validated(self):
        with pytest.raises(ValueError):
            MediaConfig(rtc_min_port=100, rtc_max_port=50)

    def test_codec_round_trip_to_capability(self):
        codec = CodecConfig.from_dict({"kind": "video", "mimeType": "video/VP8", "clockRate": 90000})
        capability = codec.to_capability()
        assert capability["kind"] == "video"
        assert capability["mimeType"] == "video/VP8"
        assert capability["clockRate"] == 90000
