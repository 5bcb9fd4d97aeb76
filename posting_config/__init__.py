"""
posting_config -- single public entrypoint for pipeline configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a frozen ``PipelineConfig``.  YAML
    parsing lives in ``loader`` and kernel translation in ``bridges``.

Architecture position:
    Configuration sits above ``posting_kernel`` and below
    ``posting_services``.  The kernel MUST NEVER import from
    ``posting_config``.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` / ``KeyError`` -- schema violations.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``POSTING_CONFIG_TRACE`` log entry containing the config_id, version,
    checksum and company count.
"""

from __future__ import annotations

import logging
from pathlib import Path

from posting_config.loader import load_pipeline_config
from posting_config.schema import PipelineConfig

_logger = logging.getLogger("posting_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> PipelineConfig:
    """
    Load and validate the pipeline configuration.

    Args:
        path: YAML file to load.  Defaults to the packaged defaults.yaml.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If validation fails.
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    config = load_pipeline_config(config_path)

    _logger.info(
        "POSTING_CONFIG_TRACE",
        extra={
            "trace_type": "POSTING_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source": str(config_path),
            "company_count": len(config.companies),
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "PipelineConfig",
    "get_active_config",
]
