"""
CartoLab configuration for map optimization.

OptimizerOptions gathers the settings shared by every optimization entry
point (multi-start optimization, dimension annealing, dimension testing,
noisy bootstrap). A process-wide default is used whenever a caller passes
``options=None``; it can be replaced with set_optimizer_options().

The default degree of parallelism is read from the CARTOLAB_NUM_CORES
environment variable, falling back to the number of CPUs.
"""

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Optional
import logging
import os

logger = logging.getLogger(__name__)

OPTIMIZER_METHODS = ("L-BFGS-B", "CG", "BFGS")


def _default_num_cores() -> int:
    env = os.getenv("CARTOLAB_NUM_CORES")
    if env:
        try:
            return max(1, int(env))
        except ValueError:
            logger.warning(f"Ignoring invalid CARTOLAB_NUM_CORES={env!r}")
    return os.cpu_count() or 1


@dataclass
class OptimizerOptions:
    """
    Settings for map optimization.

    Attributes:
        dim_annealing: Optimize over increasing dimensions, seeding each
            stage from the best map of the previous one.
        method: scipy.optimize.minimize method (L-BFGS-B, CG or BFGS).
        maxit: Maximum iterations per optimization run.
        tolerance: Convergence tolerance passed to the local optimizer.
        num_cores: Maximum number of runs executed concurrently.
        report_progress: Show a progress bar over optimization runs.
        max_retries: Fresh random restarts allowed for a run that produced
            non-finite coordinates before giving up.
        anneal_noise: Standard deviation of the extra coordinate added when
            lifting a map to a higher dimension.
    """
    dim_annealing: bool = False
    method: str = "L-BFGS-B"
    maxit: int = 1000
    tolerance: float = 1e-10
    num_cores: int = field(default_factory=_default_num_cores)
    report_progress: bool = False
    max_retries: int = 5
    anneal_noise: float = 0.1

    def __post_init__(self):
        """Validate configuration."""
        if self.method not in OPTIMIZER_METHODS:
            raise ValueError(
                f"Unknown optimizer method '{self.method}', "
                f"expected one of {', '.join(OPTIMIZER_METHODS)}"
            )
        if self.maxit < 1:
            raise ValueError(f"maxit must be at least 1, got {self.maxit}")
        if self.tolerance <= 0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")
        if self.num_cores < 1:
            raise ValueError(f"num_cores must be at least 1, got {self.num_cores}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries cannot be negative, got {self.max_retries}")
        if self.anneal_noise < 0:
            raise ValueError(f"anneal_noise cannot be negative, got {self.anneal_noise}")

    def updated(self, **changes) -> "OptimizerOptions":
        """Copy of these options with some fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Global configuration
_global_options: Optional[OptimizerOptions] = None


def get_optimizer_options() -> OptimizerOptions:
    """Get the global optimizer options."""
    global _global_options
    if _global_options is None:
        _global_options = OptimizerOptions()
    return _global_options


def set_optimizer_options(options: OptimizerOptions) -> None:
    """Set the global optimizer options."""
    global _global_options
    if not isinstance(options, OptimizerOptions):
        raise TypeError(
            f"options must be OptimizerOptions, got {type(options).__name__}"
        )
    _global_options = options


def reset_optimizer_options() -> None:
    """Restore the default optimizer options."""
    global _global_options
    _global_options = None


def resolve_options(options: Optional[OptimizerOptions] = None, **overrides) -> OptimizerOptions:
    """Return ``options`` (or the global default) with keyword overrides applied."""
    options = options if options is not None else get_optimizer_options()
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        options = options.updated(**overrides)
    return options
