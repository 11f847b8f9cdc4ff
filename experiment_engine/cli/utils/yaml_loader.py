"""YAML loading and schema validation for experiment definition files."""

from __future__ import annotations

from typing import Any, Dict, List

import yaml


class YamlValidationError(ValueError):
    """YAML schema validation error."""


def load_yaml(path: str) -> Dict[str, Any]:
    """Load YAML file and return data."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise YamlValidationError("YAMLのルートはオブジェクトである必要があります")
    return data


def validate_experiment_definition(data: Dict[str, Any]) -> None:
    """Validate experiment definition YAML data.

    例:
        name: checkout-button
        description: 購入ボタンの色
        traffic_percentage: 50
        variants:
          - A
          - name: B
            weight: 2
        goals: [completed_purchase]

    variants は文字列またはオブジェクト（{name, weight, metadata}）の配列。
    検証後、variants はオブジェクト配列に正規化される。
    """
    _require_fields(data, ["name", "variants"])

    if not isinstance(data["name"], str) or not data["name"]:
        raise YamlValidationError("name は文字列で指定してください")

    variants = data["variants"]
    if not isinstance(variants, list) or not variants:
        raise YamlValidationError("variants は1つ以上の配列で指定してください")

    normalized_variants = []
    for item in variants:
        if isinstance(item, str) and item:
            normalized_variants.append({"name": item, "weight": 1.0, "metadata": {}})
        elif isinstance(item, dict):
            if not isinstance(item.get("name"), str) or not item["name"]:
                raise YamlValidationError("variants のオブジェクトには name フィールド（文字列）が必要です")
            weight = item.get("weight", 1.0)
            if isinstance(weight, bool) or not isinstance(weight, (int, float)) or weight <= 0:
                raise YamlValidationError(f"variants.weight は正の数値で指定してください: {item['name']}")
            metadata = item.get("metadata") or {}
            if not isinstance(metadata, dict):
                raise YamlValidationError("variants.metadata はオブジェクトで指定してください")
            normalized_variants.append({
                "name": item["name"],
                "weight": float(weight),
                "metadata": metadata,
            })
        else:
            raise YamlValidationError("variants は文字列配列またはオブジェクト配列（{name, weight}）で指定してください")

    names = [v["name"] for v in normalized_variants]
    if len(names) != len(set(names)):
        raise YamlValidationError("variants の name が重複しています")
    data["variants"] = normalized_variants

    if data.get("description") is not None and not isinstance(data["description"], str):
        raise YamlValidationError("description は文字列で指定してください")

    if "traffic_percentage" in data and data["traffic_percentage"] is not None:
        traffic = data["traffic_percentage"]
        if isinstance(traffic, bool) or not isinstance(traffic, (int, float)):
            raise YamlValidationError("traffic_percentage は数値で指定してください")
        if not (0 <= traffic <= 100):
            raise YamlValidationError("traffic_percentage は 0〜100 の範囲で指定してください")

    if "goals" in data and data["goals"] is not None:
        if not isinstance(data["goals"], list):
            raise YamlValidationError("goals は配列で指定してください")
        if not all(isinstance(goal, str) and goal for goal in data["goals"]):
            raise YamlValidationError("goals は文字列配列で指定してください")

    if "metadata" in data and data["metadata"] is not None:
        if not isinstance(data["metadata"], dict):
            raise YamlValidationError("metadata はオブジェクトで指定してください")


def _require_fields(data: Dict[str, Any], fields: List[str], prefix: str | None = None) -> None:
    missing = [field for field in fields if field not in data]
    if missing:
        label = f"{prefix}." if prefix else ""
        raise YamlValidationError(f"必須フィールドが不足しています: {', '.join(label + f for f in missing)}")
