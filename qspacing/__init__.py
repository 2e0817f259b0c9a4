"""qspacing: Quantile regression by the quantile-spacing method.

This package estimates non-crossing conditional quantiles through an anchor
quantile regression and a chain of log-spacing regressions, with
cluster/stratified subsampling inference and ADMM updates for penalised
group x time effects.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "InferenceResult",
    "QuantileSpacing",
    "SolverControl",
    "SpacingResult",
    "SubsampleConfig",
    "add_constant",
    "fit_panel_effects",
    "quant_reg_spacing",
    "rq_fit_sfn",
    "spacings_to_quantiles",
    "subsample_standard_errors",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "QuantileSpacing": ("qspacing.estimators.spacing", "QuantileSpacing"),
    "SubsampleConfig": ("qspacing.estimators.base", "SubsampleConfig"),
    "SolverControl": ("qspacing.core.solver", "SolverControl"),
    "rq_fit_sfn": ("qspacing.core.solver", "rq_fit_sfn"),
    "SpacingResult": ("qspacing.core.spacing", "SpacingResult"),
    "quant_reg_spacing": ("qspacing.core.spacing", "quant_reg_spacing"),
    "spacings_to_quantiles": ("qspacing.core.spacing", "spacings_to_quantiles"),
    "InferenceResult": ("qspacing.core.subsample", "InferenceResult"),
    "subsample_standard_errors": ("qspacing.core.subsample", "subsample_standard_errors"),
    "fit_panel_effects": ("qspacing.core.admm", "fit_panel_effects"),
    "add_constant": ("qspacing.utils.auto_constant", "add_constant"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'qspacing' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
