"""Pipeline configuration read from a JSON file.

A config holds up to four keys::

    {
        "batch_key": "donor",
        "allow_list": ["Pro-B", "Pre-B"],
        "stage1": {"k": 30, "mad_threshold": 2.5},
        "stage2": {"pseudotime_key": null}
    }

``stage1`` / ``stage2`` override :class:`~ballmap.pipeline.StageParams` fields.
"""

from __future__ import annotations

import json

from dataclasses import dataclass, field
from pathlib import Path

from .pipeline import B_DEVELOPMENT_CELL_TYPES, StageParams


@dataclass
class PipelineConfig:
    stage1: StageParams = field(default_factory=StageParams)
    stage2: StageParams = field(default_factory=StageParams)
    allow_list: tuple[str, ...] = B_DEVELOPMENT_CELL_TYPES
    batch_key: str | None = None

    @classmethod
    def from_dict(cls, config: dict) -> "PipelineConfig":
        unknown = sorted(set(config) - {"stage1", "stage2", "allow_list", "batch_key"})
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")

        stages = {}
        for stage in ("stage1", "stage2"):
            section = config.get(stage, {})
            if not isinstance(section, dict):
                raise ValueError(f"`{stage}` should be a JSON object")
            stages[stage] = StageParams.from_dict(section)

        allow_list = config.get("allow_list", B_DEVELOPMENT_CELL_TYPES)
        if isinstance(allow_list, str):
            raise ValueError("`allow_list` should be a list of cell types")

        return cls(
            allow_list=tuple(allow_list), batch_key=config.get("batch_key"), **stages
        )


def read_config(path: str | Path | None) -> PipelineConfig:
    """Parse and validate a JSON pipeline config, defaults for ``path=None``.

    :raises FileNotFoundError: if ``path`` does not exist
    :raises ValueError: for a non-JSON file, malformed JSON or unknown keys
    """
    if path is None:
        return PipelineConfig()

    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    if path.suffix.lower() != ".json":
        raise ValueError(f"{path}: use a .json config file")

    try:
        config = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"{path} is not valid JSON (line {exc.lineno}, column {exc.colno}): {exc.msg}"
        ) from exc

    if not isinstance(config, dict):
        raise ValueError(f"{path}: expected a JSON object, got {type(config).__name__}")
    return PipelineConfig.from_dict(config)
