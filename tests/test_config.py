import pytest
import yaml

from utils.config import ConfigManager, deep_merge


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("LOG_LEVEL", "DEFAULT_VOLUME", "IDLE_TIMEOUT", "FFMPEG_PATH",
                "YTDLP_COMMAND", "YOUTUBE_COOKIES_PATH", "QUEUE_DISPLAY_SIZE", "BRIEF_AUTO_DELETE"):
        monkeypatch.delenv(key, raising=False)


@pytest.mark.asyncio
async def test_missing_files_are_generated_with_defaults(tmp_path):
    config = ConfigManager(tmp_path)
    await config.load()

    assert (tmp_path / "settings.yaml").exists()
    assert (tmp_path / "messages.yaml").exists()
    assert config.section("playback")["default_volume"] == 100
    assert config.section("stream")["cache_ttl"] == 300
    assert config.section("voice")["reconnect_delays"] == [1.0, 2.0, 5.0, 10.0, 30.0]


@pytest.mark.asyncio
async def test_out_of_range_values_are_clamped(tmp_path):
    (tmp_path / "settings.yaml").write_text(yaml.dump({
        "playback": {"default_volume": 500, "idle_timeout": -5},
        "queue_display_size": 0,
        "voice": {"reconnect_delays": "soon"},
    }))
    config = ConfigManager(tmp_path)
    await config.load()

    assert config.section("playback")["default_volume"] == 200
    assert config.section("playback")["idle_timeout"] == 0
    assert config.get("queue_display_size") == 1
    assert config.section("voice")["reconnect_delays"] == [1, 2, 5, 10, 30]


@pytest.mark.asyncio
async def test_null_values_restore_defaults(tmp_path):
    (tmp_path / "settings.yaml").write_text("playback:\n  default_volume:\nstream:\n")
    config = ConfigManager(tmp_path)
    await config.load()

    assert config.section("playback")["default_volume"] == 100
    assert config.section("stream")["startup_timeout"] == 15


@pytest.mark.asyncio
async def test_env_overrides_yaml(tmp_path, monkeypatch):
    (tmp_path / "settings.yaml").write_text(yaml.dump({"playback": {"default_volume": 40}}))
    monkeypatch.setenv("DEFAULT_VOLUME", "80")
    monkeypatch.setenv("FFMPEG_PATH", "/opt/ffmpeg")
    monkeypatch.setenv("QUEUE_DISPLAY_SIZE", "not a number")
    config = ConfigManager(tmp_path)
    await config.load()

    assert config.section("playback")["default_volume"] == 80
    assert config.section("extractor")["ffmpeg_path"] == "/opt/ffmpeg"
    assert config.get("queue_display_size") == 10


@pytest.mark.asyncio
async def test_messages_format_and_toggle(tmp_path):
    (tmp_path / "messages.yaml").write_text(yaml.dump({"paused": {"text": "hold on", "enabled": False}}))
    config = ConfigManager(tmp_path)
    await config.load()

    assert config.msg("shuffled", count=4) == "shuffled 4 tracks"
    assert config.msg("paused") == "hold on"
    assert not config.is_enabled("paused")
    assert config.is_enabled("resumed")
    assert config.msg("no_such_key") == "no_such_key"


def test_deep_merge_ignores_unknown_keys():
    merged = deep_merge({"a": {"b": 2}, "zzz": 1}, {"a": {"b": 1, "c": 3}})
    assert merged == {"a": {"b": 2, "c": 3}}
