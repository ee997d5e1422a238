"""
Structured Logging for One-Factor Estimation
============================================

Loggers for the covariance-structure fit, the sampler and the comparison.
Library modules only call ``get_logger``; ``setup_logging`` is for scripts.

``EstimationLogger`` prints human-readable progress when verbose and
mirrors every message to the ``cfa_mem.estimation.<name>`` logger with
the run context attached, so a JSON handler captures it as data.
"""

import json
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

_FORMATS = {
    "standard": "%(asctime)s %(levelname)-7s %(message)s",
    "detailed": "%(asctime)s %(levelname)-7s [%(name)s:%(lineno)d] %(message)s",
}
_DATEFMT = "%H:%M:%S"


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    format_style: str = "standard"
) -> None:
    """
    Attach console (and optionally file) handlers to the root logger.

    Args:
        level: Threshold for both handlers.
        log_file: Path of a log file; it always receives the detailed format.
        format_style: "standard", "detailed" or "json" for the console.
    """
    console = logging.StreamHandler(sys.stdout)
    if format_style == "json":
        console.setFormatter(JsonFormatter())
    else:
        console.setFormatter(logging.Formatter(_FORMATS.get(format_style, _FORMATS["standard"]), _DATEFMT))
    handlers = [console]

    if log_file:
        to_file = logging.FileHandler(log_file)
        to_file.setFormatter(logging.Formatter(_FORMATS["detailed"], "%Y-%m-%d %H:%M:%S"))
        handlers.append(to_file)

    for handler in handlers:
        handler.setLevel(level)
    logging.basicConfig(level=level, handlers=handlers, force=True)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class JsonFormatter(logging.Formatter):
    """One JSON object per record; run context lands under ``"context"``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


# =============================================================================
# ESTIMATION LOGGER
# =============================================================================

class EstimationLogger:
    """
    Progress reporting for one estimation run.

    Keyword arguments given to ``start`` become the run context, which is
    attached to every record this logger emits (see ``JsonFormatter``).
    The optimizer reports discrepancy values per iteration; the sampler
    reports chain completions and failures as phases and warnings.

    Example:
        log = EstimationLogger("ml_cfa")
        log.start(n_subjects=200, n_items=5)
        log.iteration(1, objective=0.41)
        log.converged(objective=0.012, n_iterations=18, n_free=15)
    """

    def __init__(self, model_name: str, verbose: bool = True):
        self.model_name = model_name
        self.verbose = verbose
        self.context: Dict[str, Any] = {}
        self._started: Optional[float] = None
        self._logger = get_logger(f"cfa_mem.estimation.{model_name}")

    @property
    def elapsed(self) -> float:
        if self._started is None:
            return 0.0
        return time.perf_counter() - self._started

    def _emit(self, level: int, message: str, console: Optional[str] = None) -> None:
        if self.verbose and console is not None:
            print(console)
        self._logger.log(level, message, extra={"context": dict(self.context, model=self.model_name)})

    def start(self, **context: Any) -> None:
        self._started = time.perf_counter()
        self.context = dict(context)
        detail = ", ".join(f"{k}={v}" for k, v in context.items())
        header = f"Estimating: {self.model_name}" + (f" ({detail})" if detail else "")
        rule = "-" * 60
        self._emit(logging.INFO, f"Started estimation: {self.model_name}",
                   f"\n{rule}\n{header}\n{rule}")

    def iteration(self, n: int, objective: float, **stats: float) -> None:
        tail = "".join(f" | {k}={v:.4g}" for k, v in stats.items())
        self._emit(logging.DEBUG, f"iteration {n}: F={objective:.6g}{tail}",
                   f"  Iter {n:3d}: F = {objective:.6f}{tail}")

    def phase(self, message: str) -> None:
        """Report a named step of the run (a chain finishing, a warm-up window)."""
        self._emit(logging.INFO, f"{self.model_name}: {message}", f"  {message}")

    def converged(self, objective: float, n_iterations: int, n_free: int,
                  aic: Optional[float] = None, bic: Optional[float] = None) -> None:
        elapsed = self.elapsed
        lines = [f"\n  Converged after {n_iterations} iterations ({elapsed:.1f}s)",
                 f"  F = {objective:.6f}, free parameters = {n_free}"]
        if aic is not None and bic is not None:
            lines.append(f"  AIC = {aic:.2f}, BIC = {bic:.2f}")
        self._emit(
            logging.INFO,
            f"Converged: {self.model_name} F={objective:.6g} K={n_free} "
            f"iterations={n_iterations} elapsed={elapsed:.1f}s",
            "\n".join(lines),
        )

    def finished(self, message: str) -> None:
        """Report completion of a run that has no objective (sampling)."""
        elapsed = self.elapsed
        self._emit(logging.INFO, f"Finished: {self.model_name} {message} elapsed={elapsed:.1f}s",
                   f"\n  Finished in {elapsed:.1f}s: {message}")

    def failed(self, reason: str) -> None:
        self._emit(logging.ERROR, f"Failed: {self.model_name} {reason}",
                   f"\n  Failed after {self.elapsed:.1f}s: {reason}")

    def warning(self, message: str) -> None:
        self._emit(logging.WARNING, f"{self.model_name}: {message}", f"  WARNING: {message}")


# =============================================================================
# WARNING CONFIGURATION
# =============================================================================

def configure_warnings(debug_mode: bool = False) -> None:
    """
    Silence the numpy floating-point warnings that rejected proposals produce.

    Early warm-up proposals exponentiate large log-scales and line-search
    trial points can hit a singular implied covariance; both are rejected
    by the caller, so the warnings carry no information. ``debug_mode``
    restores the default filters instead.
    """
    import warnings

    if debug_mode:
        warnings.simplefilter('default')
        logging.getLogger(__name__).debug("all warnings enabled")
        return
    for pattern in ('overflow', 'divide by zero', 'invalid value'):
        warnings.filterwarnings('ignore', message=f'.*{pattern}.*', category=RuntimeWarning)
