# services/app_bootstrap.py
"""
APPLICATION BOOTSTRAP

- Single place where the autonomy runtime is wired together
- No business logic
- Routers read the runtime through get_runtime(); nothing else is global
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import sqlalchemy as sa

from services.alerting_service import AlertingService
from services.audit_log import SqlAuditLog
from services.autonomy.action_executor import ActionExecutor, ExecutionSurface
from services.autonomy.config import AutonomyConfig, load_autonomy_config
from services.autonomy.execution_surfaces import (
    CapacityState,
    HandlerExecutionSurface,
    HttpExecutionSurface,
    ScriptExecutionSurface,
    capacity_handlers,
)
from services.autonomy.healing_loop import HealingLoop
from services.autonomy.kill_switch import AutonomyKillSwitch
from services.autonomy.policy_guard import PolicyGuard
from services.autonomy.reasoning_advisor import build_reasoning_advisor
from services.autonomy.remediation_rules import RemediationRuleTable
from services.autonomy.telemetry_reader import (
    PrometheusTelemetryReader,
    StaticTelemetryReader,
    TelemetryReader,
)
from services.db import create_db_engine
from services.partitions.backend import (
    CatalogOnlyPartitionBackend,
    PartitionBackend,
    PostgresPartitionBackend,
)
from services.partitions.catalog import SqlPartitionCatalog
from services.partitions.partition_manager import PartitionManager
from services.periodic_job import PeriodicJob

logger = logging.getLogger(__name__)

_GLOB_CHARS = frozenset("*?[")


@dataclass
class AutonomyRuntime:
    config: AutonomyConfig
    engine: sa.Engine
    kill_switch: AutonomyKillSwitch
    alerting: AlertingService
    audit_log: SqlAuditLog
    catalog: SqlPartitionCatalog
    guard: PolicyGuard
    executor: ActionExecutor
    healing_loop: HealingLoop
    partition_manager: PartitionManager
    healing_job: PeriodicJob
    partition_job: PeriodicJob
    capacity: Optional[CapacityState] = None


# ---------------------------------------------------------
# COMPONENT FACTORIES
# ---------------------------------------------------------
def _build_telemetry(config: AutonomyConfig) -> TelemetryReader:
    url = (os.getenv("PROMETHEUS_URL") or "").strip()
    if url:
        return PrometheusTelemetryReader(
            url, config.signals, timeout_seconds=config.signal_timeout_seconds
        )
    logger.warning("PROMETHEUS_URL not set; using static telemetry values from config")
    return StaticTelemetryReader.from_specs(config.signals)


def _build_surface(config: AutonomyConfig) -> tuple[ExecutionSurface, Optional[CapacityState]]:
    spec = config.executor
    if spec.surface == "script":
        return ScriptExecutionSurface(spec.scripts), None
    if spec.surface == "http":
        url = (os.getenv("REMEDIATION_API_URL") or spec.api_url or "").strip()
        if not url:
            raise RuntimeError("REMEDIATION_API_URL is required for the http execution surface")
        return HttpExecutionSurface(url, timeout_seconds=config.action_timeout_seconds), None

    capacity = CapacityState(spec.capacity)
    return HandlerExecutionSurface(capacity_handlers(capacity)), capacity


def advisor_action_kinds(config: AutonomyConfig, surface: ExecutionSurface) -> List[str]:
    """Concrete action kinds the advisor may propose; policy globs are not kinds."""
    kinds = {r.action_kind for r in config.remediation_rules}
    listed = getattr(surface, "kinds", None)
    if callable(listed):
        kinds.update(listed())
    else:
        kinds.update(
            r.applies_to for r in config.policy_rules if not _GLOB_CHARS & set(r.applies_to)
        )
    return sorted(kinds)


def _build_partition_backend(engine: sa.Engine) -> PartitionBackend:
    if engine.dialect.name == "postgresql":
        return PostgresPartitionBackend(engine)
    logger.warning(
        "partition_backend_catalog_only", extra={"dialect": engine.dialect.name}
    )
    return CatalogOnlyPartitionBackend()


# ---------------------------------------------------------
# RUNTIME
# ---------------------------------------------------------
def build_runtime(
    config: Optional[AutonomyConfig] = None,
    engine: Optional[sa.Engine] = None,
    *,
    telemetry: Optional[TelemetryReader] = None,
    kill_switch: Optional[AutonomyKillSwitch] = None,
) -> AutonomyRuntime:
    config = config or load_autonomy_config()
    engine = engine or create_db_engine()
    kill_switch = kill_switch or AutonomyKillSwitch.from_env()
    alerting = AlertingService()

    audit_log = SqlAuditLog(engine)
    catalog = SqlPartitionCatalog(engine)
    if engine.dialect.name == "sqlite":
        # Local runs and tests; PostgreSQL schemas come from alembic.
        audit_log.create_schema()

    surface, capacity = _build_surface(config)
    rules = RemediationRuleTable(config.remediation_rules)
    guard = PolicyGuard(config.policy_rules, kill_switch=kill_switch)
    executor = ActionExecutor(surface, timeout_seconds=config.action_timeout_seconds)
    advisor = build_reasoning_advisor(
        allowed_kinds=advisor_action_kinds(config, surface),
        timeout_seconds=config.advisor_timeout_seconds,
    )

    healing_loop = HealingLoop(
        config,
        telemetry or _build_telemetry(config),
        rules,
        advisor,
        guard,
        executor,
        audit_log,
        alerting=alerting,
    )
    partition_manager = PartitionManager(
        config.partition_tables,
        catalog,
        _build_partition_backend(engine),
        audit_log,
        alerting=alerting,
    )

    runtime = AutonomyRuntime(
        config=config,
        engine=engine,
        kill_switch=kill_switch,
        alerting=alerting,
        audit_log=audit_log,
        catalog=catalog,
        guard=guard,
        executor=executor,
        healing_loop=healing_loop,
        partition_manager=partition_manager,
        healing_job=PeriodicJob(
            "healing_loop", healing_loop.run_cycle, config.cycle_interval_seconds
        ),
        partition_job=PeriodicJob(
            "partition_manager",
            partition_manager.tick,
            config.partition_tick_interval_seconds,
        ),
        capacity=capacity,
    )
    logger.info(
        "autonomy_runtime_built",
        extra={
            "signals": len(config.signals),
            "policy_rules": len(config.policy_rules),
            "partition_tables": len(config.partition_tables),
            "executor_surface": config.executor.surface,
            "autonomy_enabled": kill_switch.is_enabled(),
        },
    )
    return runtime


# ---------------------------------------------------------
# PROCESS-WIDE ACCESS (set once at startup)
# ---------------------------------------------------------
_RUNTIME: Optional[AutonomyRuntime] = None


def set_runtime(runtime: Optional[AutonomyRuntime]) -> None:
    global _RUNTIME
    _RUNTIME = runtime


def get_runtime() -> AutonomyRuntime:
    if _RUNTIME is None:
        raise RuntimeError("Autonomy runtime is not bootstrapped")
    return _RUNTIME
