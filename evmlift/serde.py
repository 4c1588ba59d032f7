import json
from typing import Any, Optional

import structlog
import yaml

logger = structlog.get_logger()


def _as_dict(data: Any) -> Any:
    return data.to_dict() if hasattr(data, "to_dict") else data


def export_to_json(data: Any, filename: Optional[str] = None) -> str:
    """Export a graph, a decompilation result or a plain mapping as JSON."""
    text = json.dumps(_as_dict(data), indent=2)
    if filename is not None:
        with open(filename, "w") as f:
            f.write(text)
        logger.info("Exported to JSON", filename=filename)
    return text


def export_to_yaml(data: Any, filename: Optional[str] = None) -> str:
    """Export a graph, a decompilation result or a plain mapping as YAML."""
    text = yaml.safe_dump(_as_dict(data), default_flow_style=False, sort_keys=False)
    if filename is not None:
        with open(filename, "w") as f:
            f.write(text)
        logger.info("Exported to YAML", filename=filename)
    return text
