import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping, Optional

import yaml

ENV_PREFIX = "EVMLIFT_"


@dataclass(frozen=True)
class AnalysisConfig:
    """Limits and switches for CFG construction and lifting."""

    # CFG builder
    max_blocks: int = 10000
    max_fork_depth: int = 256
    max_path_instructions: int = 100000
    max_stack_depth: int = 1024
    max_block_contexts: int = 8
    max_loop_widenings: int = 1
    workers: int = 1

    # Solver (z3)
    solver_pruning: bool = False
    solver_jump_resolution: bool = True
    solver_timeout_ms: int = 2000
    max_jump_candidates: int = 16

    # Lifter
    max_expression_length: int = 240
    max_statements: int = 20000
    max_nesting_depth: int = 64

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if f.type in (int, "int") and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValueError(f"{f.name} must be an integer, got {value!r}")
            if f.type in (int, "int") and value < 1 and f.name != "max_loop_widenings":
                raise ValueError(f"{f.name} must be positive, got {value}")
        if self.max_loop_widenings < 0:
            raise ValueError("max_loop_widenings must not be negative")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AnalysisConfig":
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ValueError(f"unknown configuration keys: {', '.join(unknown)}")
        values = {}
        for key, raw in data.items():
            values[key] = _coerce(raw, known[key].type)
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AnalysisConfig":
        """Read ``EVMLIFT_<FIELD>`` variables, e.g. ``EVMLIFT_MAX_BLOCKS=500``."""
        environ = os.environ if environ is None else environ
        data = {}
        for key, value in environ.items():
            if key.startswith(ENV_PREFIX):
                data[key[len(ENV_PREFIX) :].lower()] = value
        return cls.from_mapping(data)

    def replace(self, **changes) -> "AnalysisConfig":
        data = asdict(self)
        data.update(changes)
        return AnalysisConfig.from_mapping(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce(raw: Any, kind) -> Any:
    if kind in (bool, "bool"):
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str):
            lowered = raw.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
        raise ValueError(f"expected a boolean, got {raw!r}")
    if kind in (int, "int"):
        if isinstance(raw, bool):
            raise ValueError(f"expected an integer, got {raw!r}")
        if isinstance(raw, str):
            return int(raw.strip(), 0)
        if isinstance(raw, int):
            return raw
        raise ValueError(f"expected an integer, got {raw!r}")
    return raw


def load_config(path: Optional[str] = None) -> AnalysisConfig:
    """
    Load configuration from a YAML file.

    Without a path the defaults are returned with ``EVMLIFT_*`` environment
    overrides applied.

    Args:
        path: YAML file holding a mapping of option names to values

    Returns:
        AnalysisConfig
    """
    if path is None:
        return AnalysisConfig.from_env()
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    # Options may sit under an "analysis" section
    if set(data) == {"analysis"}:
        data = data["analysis"] or {}
    return AnalysisConfig.from_mapping(data)
