import json
from pathlib import Path
from typing import Any


def load_ruleset(path: str | None = None) -> dict[str, Any]:
    if path is None:
        path = Path(__file__).with_name("safety_rules_v1.json")
    else:
        path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        ruleset = json.load(f)
    for section in ("interactions", "therapeutic_classes", "timing_separations"):
        if section not in ruleset:
            raise ValueError(f"Safety ruleset {path} is missing '{section}'")
    return ruleset
