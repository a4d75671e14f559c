"""
Loader selection from configuration.
"""

from typing import Optional

from shared.config import RulesConfig, validate_config
from shared.errors import ConfigurationError
from shared.resilience import ResilienceService
from .base import RuleLoader
from .local import LocalRuleLoader
from .remote import RemoteRuleLoader


def create_loader(config: RulesConfig, resilience: Optional[ResilienceService] = None) -> RuleLoader:
    """Build the loader named by ``config.rule_source``."""
    errors = validate_config(config)
    if errors:
        raise ConfigurationError(
            f"Invalid rules configuration: {'; '.join(errors)}",
            details={"errors": errors},
            operation="loader.create"
        )

    if config.rule_source == "remote":
        return RemoteRuleLoader.from_settings(config, resilience)
    return LocalRuleLoader.from_settings(config)
