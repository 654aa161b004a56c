"""
Tests for registry version listing, using httpx's mock transport.
"""

import json

import httpx
import pytest

from dep_bumper.cli_config import NetworkConfig
from dep_bumper.registry_clients import (
    GoProxyClient,
    NpmClient,
    NugetClient,
    PyPIClient,
    RubyGemsClient,
    client_for,
    fetch_available_versions,
)


def transport_for(routes):
    """Serve ``routes`` (url -> (status, body)); anything else is a 404."""

    def handler(request):
        status, body = routes.get(str(request.url), (404, ""))
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body)

    return httpx.MockTransport(handler)


@pytest.fixture
def network():
    return NetworkConfig(rate_limit=1000.0)


class TestUrls:
    def test_npm_scoped_package(self, network):
        assert NpmClient(network_config=network).versions_url("@babel/core") == (
            "https://registry.npmjs.org/@babel%2Fcore"
        )

    def test_go_module_case_encoding(self, network):
        client = GoProxyClient(network_config=network)
        assert client.versions_url("github.com/Azure/go-autorest") == (
            "https://proxy.golang.org/github.com/!azure/go-autorest/@v/list"
        )

    def test_nuget_lowercases(self, network):
        assert NugetClient(network_config=network).versions_url("Newtonsoft.Json") == (
            "https://api.nuget.org/v3-flatcontainer/newtonsoft.json/index.json"
        )

    def test_custom_base_url(self, network):
        client = PyPIClient(base_url="https://mirror.example.com/pypi/", network_config=network)
        assert client.versions_url("requests") == "https://mirror.example.com/pypi/requests/json"

    def test_token_header(self, network, monkeypatch):
        monkeypatch.setenv("DEP_BUMPER_NPM_TOKEN", "abc123")
        assert NpmClient(network_config=network)._headers["Authorization"] == "Bearer abc123"

    def test_unknown_package_manager(self):
        with pytest.raises(ValueError):
            client_for("submodules")


class TestGetVersions:
    @pytest.mark.asyncio
    async def test_pypi_skips_fully_yanked_releases(self, network):
        routes = {
            "https://pypi.org/pypi/requests/json": (
                200,
                {
                    "releases": {
                        "2.25.1": [{"yanked": False}],
                        "2.26.0": [{"yanked": True}],
                        "2.27.0": [],
                    }
                },
            )
        }
        async with PyPIClient(network_config=network, transport=transport_for(routes)) as client:
            result = await client.get_versions("requests")
        assert result.found
        assert result.versions == ["2.25.1", "2.27.0"]

    @pytest.mark.asyncio
    async def test_npm(self, network):
        routes = {
            "https://registry.npmjs.org/lodash": (200, {"versions": {"4.17.20": {}, "4.17.21": {}}})
        }
        async with NpmClient(network_config=network, transport=transport_for(routes)) as client:
            result = await client.get_versions("lodash")
        assert result.versions == ["4.17.20", "4.17.21"]
        assert result.registry_type == "npm"

    @pytest.mark.asyncio
    async def test_go_proxy_text_listing(self, network):
        routes = {"https://proxy.golang.org/golang.org/x/text/@v/list": (200, "v0.3.6\nv0.3.7\n\n")}
        async with GoProxyClient(network_config=network, transport=transport_for(routes)) as client:
            result = await client.get_versions("golang.org/x/text")
        assert result.versions == ["v0.3.6", "v0.3.7"]

    @pytest.mark.asyncio
    async def test_rubygems(self, network):
        routes = {
            "https://rubygems.org/api/v1/versions/rails.json": (200, [{"number": "7.0.0"}, {"number": "6.1.4"}])
        }
        async with RubyGemsClient(network_config=network, transport=transport_for(routes)) as client:
            result = await client.get_versions("rails")
        assert result.versions == ["7.0.0", "6.1.4"]

    @pytest.mark.asyncio
    async def test_not_found(self, network):
        async with NpmClient(network_config=network, transport=transport_for({})) as client:
            result = await client.get_versions("no-such-package")
        assert not result.found
        assert result.error == "Package not found"
        assert result.versions == []

    @pytest.mark.asyncio
    async def test_server_error(self, network):
        routes = {"https://registry.npmjs.org/lodash": (503, "unavailable")}
        async with NpmClient(network_config=network, transport=transport_for(routes)) as client:
            result = await client.get_versions("lodash")
        assert result.error == "HTTP 503 from npm"

    @pytest.mark.asyncio
    async def test_malformed_body(self, network):
        routes = {"https://api.nuget.org/v3-flatcontainer/foo/index.json": (200, {"items": []})}
        async with NugetClient(network_config=network, transport=transport_for(routes)) as client:
            result = await client.get_versions("foo")
        assert result.error.startswith("Unexpected response format")

    @pytest.mark.asyncio
    async def test_network_error(self, network):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with NpmClient(network_config=network, transport=httpx.MockTransport(handler)) as client:
            result = await client.get_versions("lodash")
        assert result.error == "Network error: ConnectError"

    @pytest.mark.asyncio
    async def test_requires_context_manager(self, network):
        with pytest.raises(RuntimeError):
            await NpmClient(network_config=network).get_versions("lodash")


class TestFetchAvailableVersions:
    @pytest.mark.asyncio
    async def test_batch(self, network):
        routes = {
            "https://registry.npmjs.org/lodash": (200, {"versions": {"4.17.21": {}}}),
            "https://registry.npmjs.org/left-pad": (200, json.loads('{"versions": {"1.3.0": {}}}')),
        }
        results = await fetch_available_versions(
            "npm_and_yarn", ["lodash", "left-pad"], network_config=network, transport=transport_for(routes)
        )
        assert results["lodash"].versions == ["4.17.21"]
        assert results["left-pad"].versions == ["1.3.0"]
