"""
Rule loader contract shared by the remote and local implementations.
"""

from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

from shared.retry import RetryConfig
from ..models import LoadedRule


class RuleLoader(ABC):
    """Source of rule content and authoritative versions."""

    @abstractmethod
    async def load_all(self, project_id: Optional[str] = None) -> Dict[str, LoadedRule]:
        """Load every rule in the project."""

    @abstractmethod
    async def load_one(self, rule_id: str, retry: Optional[RetryConfig] = None) -> LoadedRule:
        """Load one rule; raises RuleNotFoundError when it does not exist.

        ``retry`` replaces the loader's own retry policy for this call.
        """

    @abstractmethod
    async def check_versions(self, versions: Mapping[str, str]) -> Dict[str, bool]:
        """Map each rule id to whether its cached version is outdated."""

    async def refresh_rule(self, rule_id: str) -> LoadedRule:
        return await self.load_one(rule_id)

    async def close(self):
        """Release transport resources."""
