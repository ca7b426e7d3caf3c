"""
Reading and writing backup unit files
"""

import json
from pathlib import Path
from typing import Any, Union

from ..infrastructure.errors import MissingArtifactError


def write_json(path: Union[str, Path], payload: Any) -> Path:
    """Write ``payload`` as 2-space indented UTF-8 JSON, creating parent directories"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
    return path


def read_json(path: Union[str, Path]) -> Any:
    path = Path(path)
    if not path.is_file():
        raise MissingArtifactError(path)
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
