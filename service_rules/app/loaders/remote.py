"""
Remote rule loader backed by the upstream rules API.
"""

import base64
import binascii
import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import httpx

from shared.errors import NetworkError, RuleNotFoundError, RuleTimeoutError, RulesEngineError
from shared.logging import get_logger
from shared.resilience import ResilienceService
from shared.retry import RetryConfig, retry_call
from ..models import LoadedRule, RuleMetadata
from .base import RuleLoader


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse an ISO-8601 timestamp; ``Z`` suffixes are accepted."""
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RemoteRuleLoader(RuleLoader):
    """Loads rules from ``{api_url}/api/v1/projects/{project_id}/rules``."""

    def __init__(self,
                 api_url: str,
                 api_key: str,
                 project_id: str,
                 timeout: float = 30.0,
                 resilience: Optional[ResilienceService] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = api_url.rstrip('/')
        self.project_id = project_id
        self.timeout = timeout
        self.resilience = resilience
        self.logger = get_logger("rules.loader.remote")

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "rules-orchestrator/1.0.0",
        }

    @classmethod
    def from_settings(cls, config, resilience: Optional[ResilienceService] = None) -> "RemoteRuleLoader":
        return cls(
            api_url=config.api_url,
            api_key=config.api_key,
            project_id=config.project_id,
            timeout=config.http_timeout,
            resilience=resilience,
        )

    async def _get(self, path: str, rule_id: Optional[str] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.get(url, headers=self._headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise RuleTimeoutError(
                f"GET {path} timed out",
                timeout=self.timeout,
                rule_id=rule_id,
                operation="loader.http",
                cause=e
            ) from e
        except httpx.RequestError as e:
            raise NetworkError(
                f"Failed to fetch {path}: {e}",
                rule_id=rule_id,
                operation="loader.http",
                cause=e
            ) from e

        if response.status_code == 404 and rule_id is not None:
            raise RuleNotFoundError(rule_id, operation="loader.load_one")

        if response.status_code >= 400:
            self.logger.error(
                "Rules API error",
                path=path,
                status_code=response.status_code,
                body=response.text[:500]
            )
            raise NetworkError(
                f"HTTP {response.status_code} from {path}",
                details={"status_code": response.status_code},
                rule_id=rule_id,
                operation="loader.http",
                retryable=response.status_code >= 500 or response.status_code == 429
            )

        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON response from {path}", rule_id=rule_id,
                               operation="loader.http", cause=e) from e

    async def _call(self, operation, name: str, retry: Optional[RetryConfig] = None):
        if self.resilience is None:
            if retry is None:
                return await operation()
            return await retry_call(operation, retry, operation_name=name)
        options = None
        if retry is not None:
            options = replace(self.resilience.default_options, retry=retry)
        return await self.resilience.with_resilience(operation, name, options)

    def _parse_rule(self, rule: Dict[str, Any]) -> LoadedRule:
        if not isinstance(rule, dict):
            raise NetworkError("Unexpected rule payload", operation="loader.parse", retryable=False)
        rule_id = rule.get("id")
        try:
            data = base64.b64decode(rule["content"], validate=True)
            json.loads(data)
            metadata = RuleMetadata(
                id=rule_id,
                version=str(rule["version"]),
                tags=frozenset(rule.get("tags") or []),
                last_modified=parse_timestamp(rule.get("lastModified")),
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise NetworkError(
                f"Failed to parse rule response for {rule_id}",
                rule_id=rule_id,
                operation="loader.parse",
                cause=e,
                retryable=False
            ) from e
        return LoadedRule(data=data, metadata=metadata)

    async def _fetch_project(self, target: str) -> Dict[str, LoadedRule]:
        payload = await self._get(f"/api/v1/projects/{target}/rules")
        if not isinstance(payload, dict) or not isinstance(payload.get("rules"), list):
            raise NetworkError(f"Unexpected rules listing for project {target}",
                               operation="loader.load_all", retryable=False)
        return {rule.get("id"): self._parse_rule(rule) for rule in payload["rules"]}

    async def load_all(self, project_id: Optional[str] = None) -> Dict[str, LoadedRule]:
        target = project_id or self.project_id

        try:
            rules = await self._call(lambda: self._fetch_project(target), "loader.load_all")
        except RulesEngineError:
            raise
        except Exception as e:
            raise NetworkError(f"Failed to load rules for project {target}",
                               operation="loader.load_all", cause=e) from e

        self.logger.info("Rules loaded from upstream", project_id=target, count=len(rules))
        return rules

    async def load_one(self, rule_id: str, retry: Optional[RetryConfig] = None) -> LoadedRule:
        async def fetch():
            payload = await self._get(f"/api/v1/projects/{self.project_id}/rules/{rule_id}", rule_id)
            return self._parse_rule(payload)

        return await self._call(fetch, f"loader.load_one.{rule_id}", retry)

    async def check_versions(self, versions: Mapping[str, str]) -> Dict[str, bool]:
        upstream = await self._call(lambda: self._fetch_project(self.project_id), "loader.check_versions")
        result = {}
        for rule_id, version in versions.items():
            rule = upstream.get(rule_id)
            result[rule_id] = rule is None or rule.metadata.version != version
        return result

    async def close(self):
        if self._owns_client:
            await self._client.aclose()
