from __future__ import annotations

from services.app_bootstrap import advisor_action_kinds
from services.autonomy.config import CapacitySpec, parse_autonomy_config
from services.autonomy.execution_surfaces import (
    CapacityState,
    HandlerExecutionSurface,
    HttpExecutionSurface,
    ScriptExecutionSurface,
    capacity_handlers,
)

CONFIG = parse_autonomy_config(
    {
        "remediation_rules": [
            {
                "id": "cpu-critical",
                "signal": "cpu_util",
                "min_severity": "critical",
                "action_kind": "scale_down_workers",
            }
        ],
        "policy_rules": [
            {"id": "scaling", "applies_to": "scale_*", "max_actions_per_window": 5},
            {"id": "restart", "applies_to": "restart_service", "max_actions_per_window": 1},
        ],
    }
)


def test_handler_surface_kinds_exclude_policy_globs() -> None:
    surface = HandlerExecutionSurface(capacity_handlers(CapacityState(CapacitySpec())))

    kinds = advisor_action_kinds(CONFIG, surface)

    assert "scale_*" not in kinds
    assert kinds == sorted(
        ["restore_intake", "scale_down_workers", "scale_up_workers", "throttle_intake"]
    )


def test_script_surface_contributes_its_configured_kinds() -> None:
    surface = ScriptExecutionSurface({"restart_service": "/opt/remediation/restart.sh"})

    assert advisor_action_kinds(CONFIG, surface) == ["restart_service", "scale_down_workers"]


def test_opaque_surface_falls_back_to_concrete_policy_kinds() -> None:
    surface = HttpExecutionSurface("http://remediation.internal")

    assert advisor_action_kinds(CONFIG, surface) == ["restart_service", "scale_down_workers"]
