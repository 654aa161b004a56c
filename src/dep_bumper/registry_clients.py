"""
Registry clients for listing the published versions of a package.

Rate-limited async clients for PyPI, npm, the Go module proxy, RubyGems
and NuGet. Each returns a RegistryVersionsResult; transport and HTTP
failures are reported in ``error`` rather than raised.
"""

import asyncio
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type
from urllib.parse import quote

import httpx
from httpx import HTTPStatusError, RequestError

from .cli_config import NetworkConfig, get_config
from .error_handling import ErrorCategory, get_error_handler, sanitize_message


@dataclass(frozen=True)
class RegistryVersionsResult:
    """Versions published for one package."""

    package_name: str
    registry_type: str
    versions: List[str] = field(default_factory=list)
    error: Optional[str] = None
    check_duration_ms: Optional[int] = None

    @property
    def found(self) -> bool:
        return self.error is None


class RateLimiter:
    """Simple rate limiter to avoid overwhelming registries."""

    def __init__(self, requests_per_second: float = 10.0):
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second
        self.last_request_time = 0.0

    async def acquire(self) -> None:
        current_time = time.time()
        time_since_last = current_time - self.last_request_time

        if time_since_last < self.min_interval:
            await asyncio.sleep(self.min_interval - time_since_last)

        self.last_request_time = time.time()


def _token_from_env(registry_type: str) -> Optional[str]:
    token = os.environ.get(f"DEP_BUMPER_{registry_type.upper()}_TOKEN", "").strip()
    return token or None


class BaseRegistryClient(ABC):
    """
    Base class for registry clients.

    Use as an async context manager; the httpx client lives for the
    duration of the ``async with`` block.
    """

    registry_type = "base"

    def __init__(
        self,
        base_url: Optional[str] = None,
        network_config: Optional[NetworkConfig] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.network_config = network_config or get_config().network
        self.base_url = (base_url or self.network_config.registry_urls[self.registry_type]).rstrip("/")
        self.rate_limiter = RateLimiter(self.network_config.rate_limit)
        self.timeout = self.network_config.timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

        self._headers = {
            "User-Agent": self.network_config.user_agent,
            "Accept": "application/json",
        }
        token = token or _token_from_env(self.registry_type)
        if token:
            self._headers["Authorization"] = f"Bearer {token}"

    async def __aenter__(self) -> "BaseRegistryClient":
        self.client = httpx.AsyncClient(
            timeout=self.timeout, headers=self._headers, transport=self.transport
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    @abstractmethod
    def versions_url(self, package_name: str) -> str:
        """URL listing every version of ``package_name``."""

    @abstractmethod
    def parse_versions(self, response: httpx.Response) -> List[str]:
        """Extract version strings from a successful response."""

    async def get_versions(self, package_name: str) -> RegistryVersionsResult:
        if self.client is None:
            raise RuntimeError("Registry client used outside of 'async with'")

        start_time = time.time()
        url = self.versions_url(package_name)
        await self.rate_limiter.acquire()

        def done(versions: Optional[List[str]] = None, error: Optional[str] = None) -> RegistryVersionsResult:
            return RegistryVersionsResult(
                package_name=package_name,
                registry_type=self.registry_type,
                versions=versions or [],
                error=error,
                check_duration_ms=int((time.time() - start_time) * 1000),
            )

        try:
            response = await self.client.get(url)
            if response.status_code == 404:
                return done(error="Package not found")
            response.raise_for_status()
            return done(versions=self.parse_versions(response))
        except HTTPStatusError as e:
            return done(error=f"HTTP {e.response.status_code} from {self.registry_type}")
        except RequestError as e:
            get_error_handler().warning(
                ErrorCategory.NETWORK,
                f"Registry request failed: {sanitize_message(str(e))}",
                "registry_clients",
                "get_versions",
                details={"registry": self.registry_type},
                exception=e,
            )
            return done(error=f"Network error: {type(e).__name__}")
        except (ValueError, KeyError, TypeError) as e:
            return done(error=f"Unexpected response format: {e}")


class PyPIClient(BaseRegistryClient):
    registry_type = "pypi"

    def versions_url(self, package_name: str) -> str:
        return f"{self.base_url}/{quote(package_name)}/json"

    def parse_versions(self, response: httpx.Response) -> List[str]:
        releases: Dict[str, List[Dict[str, Any]]] = response.json()["releases"]
        # a release whose every file is yanked is not installable
        return [
            version
            for version, files in releases.items()
            if not files or not all(f.get("yanked") for f in files)
        ]


class NpmClient(BaseRegistryClient):
    registry_type = "npm"

    def versions_url(self, package_name: str) -> str:
        return f"{self.base_url}/{quote(package_name, safe='@')}"

    def parse_versions(self, response: httpx.Response) -> List[str]:
        return list(response.json().get("versions", {}).keys())


class GoProxyClient(BaseRegistryClient):
    registry_type = "go"

    @staticmethod
    def escape_module_path(module_path: str) -> str:
        """Case-encode a module path for the proxy (``Azure`` -> ``!azure``)."""
        return "".join(f"!{c.lower()}" if c.isupper() else c for c in module_path)

    def versions_url(self, package_name: str) -> str:
        return f"{self.base_url}/{self.escape_module_path(package_name)}/@v/list"

    def parse_versions(self, response: httpx.Response) -> List[str]:
        return [line.strip() for line in response.text.splitlines() if line.strip()]


class RubyGemsClient(BaseRegistryClient):
    registry_type = "rubygems"

    def versions_url(self, package_name: str) -> str:
        return f"{self.base_url}/api/v1/versions/{quote(package_name)}.json"

    def parse_versions(self, response: httpx.Response) -> List[str]:
        return [entry["number"] for entry in response.json()]


class NugetClient(BaseRegistryClient):
    registry_type = "nuget"

    def versions_url(self, package_name: str) -> str:
        return f"{self.base_url}/{quote(package_name.lower())}/index.json"

    def parse_versions(self, response: httpx.Response) -> List[str]:
        return list(response.json()["versions"])


REGISTRY_CLIENTS: Dict[str, Type[BaseRegistryClient]] = {
    "pip": PyPIClient,
    "npm_and_yarn": NpmClient,
    "go_modules": GoProxyClient,
    "bundler": RubyGemsClient,
    "nuget": NugetClient,
}


def client_for(package_manager: str, **kwargs) -> BaseRegistryClient:
    try:
        return REGISTRY_CLIENTS[package_manager](**kwargs)
    except KeyError:
        raise ValueError(f"No registry client for package manager: {package_manager}")


async def fetch_available_versions(
    package_manager: str, package_names: List[str], **kwargs
) -> Dict[str, RegistryVersionsResult]:
    """Look up several packages of one ecosystem concurrently."""
    async with client_for(package_manager, **kwargs) as client:
        results = await asyncio.gather(*(client.get_versions(name) for name in package_names))
    return {result.package_name: result for result in results}
