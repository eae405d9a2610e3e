import pytest


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("", []),
        ("tavily", ["tavily"]),
        (" Serper, ,brave , ", ["serper", "brave"]),
    ],
)
def test_search_engines_list_strips_lowercases_and_drops_empty(raw, expected):
    from common.config import Settings

    s = Settings(_env_file=None, search_engines=raw)
    assert s.search_engines_list == expected


@pytest.mark.parametrize("raw,expected", [("", None), ("   ", None), ("data/quota.json", "data/quota.json")])
def test_quota_state_file_is_optional(raw, expected):
    from common.config import Settings

    s = Settings(_env_file=None, quota_state_path=raw)
    assert s.quota_state_file == expected


def test_settings_defaults_do_not_require_api_keys(monkeypatch):
    """Settings should be constructible in dev/test without any provider keys."""
    for name in ("TAVILY_API_KEY", "SERPER_API_KEY", "BRAVE_API_KEY"):
        monkeypatch.delenv(name, raising=False)

    from common.config import Settings

    s = Settings(_env_file=None)
    assert s.tavily_api_key == ""
    assert s.memory_max_entries == 1024
    assert s.metrics_retention_days == 30
    assert s.enable_file_logging is False


def test_settings_read_environment_case_insensitively(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENCY", "9")
    monkeypatch.setenv("provider_timeout_seconds", "3.5")

    from common.config import Settings

    s = Settings(_env_file=None)
    assert s.max_concurrency == 9
    assert s.provider_timeout_seconds == 3.5
