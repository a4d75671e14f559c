"""
Rules orchestration service.
"""

from typing import Any, Dict, List, Optional

from shared.base_service import BaseService
from shared.config import RulesConfig
from shared.errors import ResourceNotFoundError, RuleNotFoundError

from .engine import RulesEngine
from .execution.engine import BatchOptions
from .models import (
    BatchExecuteRequest, EvaluateRequest, ExecuteRequest, ExecutionResponse,
    InvalidateRequest, RefreshRequest, RollbackRequest
)
from .version.manager import InvalidationOptions


class RulesService(BaseService):
    """Rules service implementation."""

    def __init__(self, config: Optional[RulesConfig] = None, engine: Optional[RulesEngine] = None):
        super().__init__("rules", config)

        self.engine = engine or RulesEngine(self.config, metrics=self.metrics)

        @self.app.on_event("startup")
        async def _startup():
            try:
                await self.engine.initialize()
            except Exception as e:
                self.logger.error("Rules engine failed to initialize", error=str(e))

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.engine.close()

        self._setup_rules_routes()
        self._setup_resilience_routes()

    def _setup_rules_routes(self):
        """Set up rules-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "rules",
                "message": "Rules orchestration service",
                "version": "1.0.0",
                "capabilities": ["selectors", "parallel", "sequential", "mixed", "batch", "versioning"],
                "status": self.engine.get_status()
            }

        @self.app.get("/rules")
        async def list_rules():
            """List metadata of every loaded rule."""
            metadata = self.engine.get_all_rule_metadata()
            return {
                "rules": [m.to_dict() for m in metadata.values()],
                "total": len(metadata)
            }

        @self.app.get("/rules/metadata/{rule_id:path}")
        async def get_rule_metadata(rule_id: str):
            metadata = self.engine.get_rule_metadata(rule_id)
            if metadata is None:
                raise RuleNotFoundError(rule_id, operation="api.get_rule_metadata")
            return metadata.to_dict()

        @self.app.post("/rules/execute", response_model=ExecutionResponse)
        async def execute_rules(request: ExecuteRequest):
            """Resolve a selector and execute it against one input."""
            result = await self.engine.execute(request.selector.to_selector(), request.input)
            return ExecutionResponse(**result.to_dict())

        @self.app.post("/rules/execute/batch")
        async def execute_batch(request: BatchExecuteRequest):
            """Execute a selector against many inputs."""
            result = await self.engine.execute_batch(
                request.inputs,
                request.selector.to_selector(),
                BatchOptions(continue_on_error=request.continue_on_error)
            )
            return result.to_dict()

        @self.app.post("/rules/evaluate/{rule_id:path}")
        async def evaluate_rule(rule_id: str, request: EvaluateRequest):
            """Evaluate a single rule."""
            result = await self.engine.execute_rule(rule_id, request.input)
            return {"rule_id": rule_id, "result": result}

        @self.app.get("/rules/versions")
        async def get_versions():
            """Compare cached versions against the rule source."""
            comparisons = await self.engine.compare_versions()
            return {
                "comparisons": [c.to_dict() for c in comparisons],
                "outdated": [c.rule_id for c in comparisons if c.needs_update],
                "stats": self.engine.get_version_stats()
            }

        @self.app.post("/rules/versions/refresh")
        async def refresh_versions(request: RefreshRequest):
            """Resolve version drift with a conflict strategy."""
            if request.force:
                return {"status": await self.engine.force_refresh_cache()}
            result = await self.engine.auto_refresh_cache(
                request.rule_ids,
                InvalidationOptions(strategy=request.strategy)
            )
            return result.to_dict()

        @self.app.post("/rules/invalidate")
        async def invalidate_rules(request: InvalidateRequest):
            result = await self.engine.invalidate_rules(
                request.rule_ids,
                InvalidationOptions(create_snapshot=request.create_snapshot)
            )
            return result.to_dict()

        @self.app.post("/rules/rollback")
        async def rollback_rule(request: RollbackRequest):
            rolled_back = await self.engine.rollback_rule(request.rule_id, request.snapshot_index)
            if not rolled_back:
                raise ResourceNotFoundError(
                    f"No snapshot {request.snapshot_index} for rule {request.rule_id}",
                    rule_id=request.rule_id,
                    operation="version.rollback"
                )
            return {"rule_id": request.rule_id, "rolled_back": True}

        @self.app.get("/rules/snapshots/{rule_id:path}")
        async def get_snapshots(rule_id: str) -> Dict[str, Any]:
            snapshots: List[Dict[str, Any]] = [
                s.to_dict() for s in self.engine.get_rollback_snapshots(rule_id)
            ]
            return {"rule_id": rule_id, "snapshots": snapshots}

    def _setup_resilience_routes(self):
        """Set up resilience inspection routes."""

        @self.app.get("/resilience/circuit-breakers")
        async def get_circuit_breakers():
            return {"circuit_breakers": self.engine.resilience.get_all_stats()}

        @self.app.post("/resilience/circuit-breakers/{name:path}/reset")
        async def reset_circuit_breaker(name: str):
            if not self.engine.resilience.reset(name):
                raise ResourceNotFoundError(
                    f"Circuit breaker {name} not found",
                    operation="resilience.reset"
                )
            return {"name": name, "reset": True}

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Check rule source state."""
        status = self.engine.get_status()
        return {
            "rules": "ok" if status["initialized"] else "not_loaded",
            "rules_loaded": status["rules_loaded"],
            "rule_source": status["rule_source"]
        }


def create_app():
    """Create rules service application."""
    service = RulesService()
    return service.app


if __name__ == "__main__":
    service = RulesService()
    service.run()
