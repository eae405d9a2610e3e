import pytest
from tavily.errors import BadRequestError, InvalidAPIKeyError, UsageLimitExceededError

from common.config import Settings
from tools.search import providers
from tools.search.errors import ProviderPermanentError, ProviderTransientError
from tools.search.models import ProviderResponse, SearchOptions, SearchResult
from tools.search.providers import (
    BraveProvider,
    CallableProvider,
    SerperProvider,
    TavilyProvider,
    default_providers,
)

KEY = "k" * 32


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def test_is_valid_api_key_rejects_placeholders_and_short_values():
    assert providers._is_valid_api_key("") is False
    assert providers._is_valid_api_key("short") is False
    assert providers._is_valid_api_key("YOUR_API_KEY_HERE") is False
    assert providers._is_valid_api_key(" tvly-1234567890 ") is True


def test_error_messages_are_redacted_before_surfacing():
    raw = (
        "request failed: https://google.serper.dev/places?x=1 "
        "api_key=sk-THIS_SHOULD_NOT_LEAK "
        "Authorization: Bearer abc.def.ghi"
    )
    sanitized = providers._sanitize_error_message(raw)

    assert "serper.dev" not in sanitized
    assert "THIS_SHOULD_NOT_LEAK" not in sanitized
    assert "Bearer [REDACTED]" in sanitized
    assert len(providers._sanitize_error_message("X" * 2000)) <= 303


def test_serper_places_results_are_normalized(monkeypatch):
    seen = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        seen["url"] = url
        seen["payload"] = json
        return _FakeResponse(
            payload={
                "places": [
                    {"title": "Spyhouse", "website": "https://spyhouse.example", "address": "945 Broadway",
                     "rating": 4.5, "latitude": 44.99, "longitude": -93.26, "category": "Coffee shop"},
                    "junk",
                ]
            }
        )

    monkeypatch.setattr(providers.requests, "post", fake_post)

    response = SerperProvider(api_key=KEY).search("coffee shops", "minneapolis", SearchOptions(cache_type="venue"))

    assert seen["url"].endswith("/places")
    assert seen["payload"]["location"] == "minneapolis"
    assert len(response.items) == 1
    item = response.items[0]
    assert item.title == "Spyhouse"
    assert item.score == pytest.approx(0.9)
    assert item.extra["address"] == "945 Broadway"
    assert item.extra["position"] == 1
    assert response.cost is None


@pytest.mark.parametrize(
    "status,error",
    [(429, ProviderTransientError), (503, ProviderTransientError), (401, ProviderPermanentError)],
)
def test_http_status_maps_to_error_class(monkeypatch, status, error):
    monkeypatch.setattr(
        providers.requests, "post", lambda *a, **kw: _FakeResponse(status, text="upstream said no")
    )

    with pytest.raises(error) as exc:
        SerperProvider(api_key=KEY).search("ai chips", "", SearchOptions())
    assert exc.value.provider_id == "serper"


def test_network_errors_are_transient(monkeypatch):
    def fail(*args, **kwargs):
        raise providers.requests.ConnectionError("connection reset")

    monkeypatch.setattr(providers.requests, "get", fail)

    with pytest.raises(ProviderTransientError):
        BraveProvider(api_key=KEY).search("ai chips", "", SearchOptions())


def test_missing_api_key_is_permanent():
    with pytest.raises(ProviderPermanentError):
        BraveProvider(api_key="").search("ai chips", "", SearchOptions())


def test_brave_news_uses_news_endpoint_and_appends_location(monkeypatch):
    seen = {}

    def fake_get(url, headers=None, params=None, timeout=None):
        seen["url"] = url
        seen["params"] = params
        return _FakeResponse(payload={"results": [{"title": "Chips", "url": "https://n.example", "description": "d"}]})

    monkeypatch.setattr(providers.requests, "get", fake_get)

    response = BraveProvider(api_key=KEY).search("ai chips", "boston", SearchOptions(cache_type="news", max_results=3))

    assert "/news/" in seen["url"]
    assert seen["params"] == {"q": "ai chips near boston", "count": 3}
    assert [r.url for r in response.items] == ["https://n.example"]


def test_tavily_uses_injected_client_and_dedupes_urls():
    class FakeClient:
        def __init__(self):
            self.params = None

        def search(self, **params):
            self.params = params
            return {
                "results": [
                    {"title": "A", "url": "https://a.example", "content": "x", "score": 0.9},
                    {"title": "A again", "url": "https://a.example", "content": "y"},
                    {"title": "B", "url": "https://b.example", "content": "z", "score": 0.4},
                ]
            }

    client = FakeClient()
    response = TavilyProvider(api_key="", client=client).search(
        "llm evals", "", SearchOptions(cache_type="research", max_results=5)
    )

    assert client.params["search_depth"] == "advanced"
    assert [r.url for r in response.items] == ["https://a.example", "https://b.example"]


def test_callable_provider_accepts_several_return_shapes():
    opts = SearchOptions()

    as_list = CallableProvider("fn", lambda q, loc, o: [{"title": q, "link": "https://x.example"}])
    as_dict = CallableProvider("fn", lambda q, loc, o: {"items": [], "cost": "0.02"})
    as_response = CallableProvider(
        "fn", lambda q, loc, o: ProviderResponse(items=[SearchResult("t", "https://y.example", "s")], cost=0.0)
    )

    listed = as_list.search("ai chips", "", opts)
    assert listed.items[0].url == "https://x.example"
    assert listed.items[0].provider == "fn"
    assert as_dict.search("ai chips", "", opts).cost == pytest.approx(0.02)
    assert as_response.search("ai chips", "", opts).cost == 0.0


def test_default_providers_skips_unconfigured_and_unknown_engines():
    config = Settings(_env_file=None, search_engines="serper, brave, bing", serper_api_key=KEY, brave_api_key="")

    built = default_providers(config)

    assert list(built) == ["serper"]


@pytest.mark.parametrize(
    "raised,error",
    [
        (InvalidAPIKeyError("Unauthorized: missing or invalid API key."), ProviderPermanentError),
        (BadRequestError("query is too long"), ProviderPermanentError),
        (UsageLimitExceededError("usage limit exceeded"), ProviderTransientError),
    ],
)
def test_tavily_client_errors_map_to_error_class(raised, error):
    class FailingClient:
        def search(self, **params):
            raise raised

    with pytest.raises(error) as exc:
        TavilyProvider(api_key="", client=FailingClient()).search("llm evals", "", SearchOptions())
    assert exc.value.provider_id == "tavily"
