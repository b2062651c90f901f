"""
Tests for the model catalog, served through httpx.MockTransport.
"""

import httpx
import pytest

from conversebridge.catalog import ModelCatalog, ModelInfo, parse_model_listing
from conversebridge.config import ProxyCredentials

MODEL_INFO = {
    "data": [
        {
            "model_name": "claude-sonnet",
            "model_info": {
                "supports_function_calling": True,
                "max_tokens": 8192,
                "supported_openai_params": ["temperature", "thinking"],
            },
        },
        {"model_name": "claude-sonnet", "model_info": {"max_tokens": 1}},
        {"model_name": "llama-3", "model_info": {"supports_tool_choice": False}},
        {"model_info": {}},
    ]
}


def make_catalog(handler, credentials=None, **kwargs):
    credentials = credentials or ProxyCredentials(api_key="sk-test", base_url="http://proxy:4000")
    return ModelCatalog(credentials, transport=httpx.MockTransport(handler), **kwargs)


class TestParseModelListing:
    def test_maps_entries(self):
        models = parse_model_listing(MODEL_INFO)
        assert models[0] == ModelInfo(
            model_id="claude-sonnet",
            model_name="claude-sonnet (LiteLLM)",
            tool_use=True,
            max_tokens_limit=8192,
            supports_thinking=True,
        )
        assert models[1].tool_use is False
        assert models[1].max_tokens_limit == 4096
        assert models[1].provider == "litellm"

    def test_first_entry_per_name_wins(self):
        models = parse_model_listing(MODEL_INFO)
        assert [m.model_id for m in models] == ["claude-sonnet", "llama-3"]

    def test_invalid_payload(self):
        assert parse_model_listing({"models": []}) == []
        assert parse_model_listing([]) == []


class TestModelCatalog:
    @pytest.mark.asyncio
    async def test_lists_models_with_bearer_auth(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=MODEL_INFO)

        models = await make_catalog(handler).list_models()

        assert [m.model_id for m in models] == ["claude-sonnet", "llama-3"]
        assert seen[0].url == "http://proxy:4000/v2/model/info"
        assert seen[0].headers["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_results_cached(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=MODEL_INFO)

        catalog = make_catalog(handler)
        await catalog.list_models()
        await catalog.list_models()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cache_keyed_by_credentials(self):
        calls = []

        def handler(request):
            calls.append(request.headers["Authorization"])
            return httpx.Response(200, json=MODEL_INFO)

        catalog = make_catalog(handler)
        await catalog.list_models()
        await catalog.list_models(ProxyCredentials(api_key="sk-other", base_url="http://proxy:4000"))
        assert calls == ["Bearer sk-test", "Bearer sk-other"]

    @pytest.mark.asyncio
    async def test_expired_cache_refetches(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=MODEL_INFO)

        catalog = make_catalog(handler, cache_lifetime=0)
        await catalog.list_models()
        await catalog.list_models()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_http_error_yields_empty_list(self, caplog):
        catalog = make_catalog(lambda request: httpx.Response(401, json={"error": "unauthorized"}))
        with caplog.at_level("ERROR", logger="conversebridge.catalog"):
            assert await catalog.list_models() == []
        assert "Error fetching models" in caplog.text

    @pytest.mark.asyncio
    async def test_connection_error_yields_empty_list(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await make_catalog(handler).list_models() == []

    @pytest.mark.asyncio
    async def test_failures_not_cached(self):
        responses = [httpx.Response(500), httpx.Response(200, json=MODEL_INFO)]
        catalog = make_catalog(lambda request: responses.pop(0))
        assert await catalog.list_models() == []
        assert len(await catalog.list_models()) == 2
