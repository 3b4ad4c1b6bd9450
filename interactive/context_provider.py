"""Environment and capability lookups backing the requirement checks."""

from __future__ import annotations

import abc
import logging
from typing import Any, Dict, List, Optional

import httpx

from .cache import ResultCache
from .config import GuideConfig

log = logging.getLogger(__name__)


class ContextProvider(abc.ABC):
    """Source of truth for who the user is and what the instance offers."""

    @abc.abstractmethod
    async def get_user(self) -> Optional[Dict[str, Any]]:
        """Current user with ``isGrafanaAdmin`` and ``orgRole``, or ``None``."""

    @abc.abstractmethod
    async def get_data_sources(self) -> List[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def get_plugins(self) -> List[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def search_dashboards(self, title: str) -> List[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def get_permissions(self) -> Dict[str, Any]:
        """Mapping of granted permission actions to their scopes."""

    @abc.abstractmethod
    async def get_frontend_settings(self) -> Dict[str, Any]:
        ...

    async def feature_toggles(self) -> Dict[str, Any]:
        settings = await self.get_frontend_settings()
        return settings.get("featureToggles") or {}

    async def build_info(self) -> Dict[str, Any]:
        settings = await self.get_frontend_settings()
        return settings.get("buildInfo") or {}

    async def aclose(self) -> None:
        return None


class GrafanaContextProvider(ContextProvider):
    """Reads the Grafana HTTP API, caching each response for a while."""

    def __init__(
        self,
        config: GuideConfig,
        *,
        cache: Optional[ResultCache] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config
        self.cache = cache if cache is not None else ResultCache(config.cache_ttl_seconds)
        headers = {"Accept": "application/json"}
        if config.grafana_token:
            headers["Authorization"] = f"Bearer {config.grafana_token}"
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=config.grafana_url,
            headers=headers,
            timeout=config.http_timeout_s,
        )

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        key = path if not params else f"{path}?{sorted(params.items())}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        response = await self.client.get(path, params=params)
        response.raise_for_status()
        data = response.json()
        self.cache.set(key, data)
        return data

    async def get_user(self) -> Optional[Dict[str, Any]]:
        try:
            user = await self._get_json("/api/user")
        except httpx.HTTPError as exc:
            log.warning("Failed to fetch current user: %s", exc)
            return None
        if not isinstance(user, dict):
            return None
        if "orgRole" not in user:
            user = dict(user)
            user["orgRole"] = await self._org_role(user.get("orgId"))
        return user

    async def _org_role(self, org_id: Any) -> Optional[str]:
        try:
            orgs = await self._get_json("/api/user/orgs")
        except httpx.HTTPError as exc:
            log.debug("Failed to fetch user organisations: %s", exc)
            return None
        for org in orgs or []:
            if org_id is None or org.get("orgId") == org_id:
                return org.get("role")
        return None

    async def get_data_sources(self) -> List[Dict[str, Any]]:
        return list(await self._get_json("/api/datasources") or [])

    async def get_plugins(self) -> List[Dict[str, Any]]:
        return list(await self._get_json("/api/plugins", {"enabled": 1}) or [])

    async def search_dashboards(self, title: str) -> List[Dict[str, Any]]:
        return list(await self._get_json("/api/search", {"type": "dash-db", "query": title}) or [])

    async def get_permissions(self) -> Dict[str, Any]:
        return dict(await self._get_json("/api/access-control/user/permissions") or {})

    async def get_frontend_settings(self) -> Dict[str, Any]:
        return dict(await self._get_json("/api/frontend/settings") or {})

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class StaticContextProvider(ContextProvider):
    """Fixed answers, for offline runs and tests."""

    def __init__(
        self,
        *,
        user: Optional[Dict[str, Any]] = None,
        data_sources: Optional[List[Dict[str, Any]]] = None,
        plugins: Optional[List[Dict[str, Any]]] = None,
        dashboards: Optional[List[Dict[str, Any]]] = None,
        permissions: Optional[Dict[str, Any]] = None,
        frontend_settings: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.user = user
        self.data_sources = data_sources or []
        self.plugins = plugins or []
        self.dashboards = dashboards or []
        self.permissions = permissions or {}
        self.frontend_settings = frontend_settings or {}

    async def get_user(self) -> Optional[Dict[str, Any]]:
        return self.user

    async def get_data_sources(self) -> List[Dict[str, Any]]:
        return list(self.data_sources)

    async def get_plugins(self) -> List[Dict[str, Any]]:
        return list(self.plugins)

    async def search_dashboards(self, title: str) -> List[Dict[str, Any]]:
        needle = title.lower()
        return [item for item in self.dashboards if needle in str(item.get("title", "")).lower()]

    async def get_permissions(self) -> Dict[str, Any]:
        return dict(self.permissions)

    async def get_frontend_settings(self) -> Dict[str, Any]:
        return dict(self.frontend_settings)
