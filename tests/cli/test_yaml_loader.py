import pytest

from experiment_engine.cli.utils.yaml_loader import (
    YamlValidationError,
    load_yaml,
    validate_experiment_definition,
)


def test_variants_are_normalized():
    data = {"name": "checkout-button", "variants": ["A", {"name": "B", "weight": 2}]}

    validate_experiment_definition(data)

    assert data["variants"] == [
        {"name": "A", "weight": 1.0, "metadata": {}},
        {"name": "B", "weight": 2.0, "metadata": {}},
    ]


@pytest.mark.parametrize(
    "data, message",
    [
        ({"variants": ["A"]}, "name"),
        ({"name": "x", "variants": []}, "variants"),
        ({"name": "x", "variants": ["A", "A"]}, "重複"),
        ({"name": "x", "variants": [{"name": "A", "weight": 0}]}, "weight"),
        ({"name": "x", "variants": ["A"], "traffic_percentage": 150}, "traffic_percentage"),
        ({"name": "x", "variants": ["A"], "goals": "completed_purchase"}, "goals"),
    ],
)
def test_invalid_definitions(data, message):
    with pytest.raises(YamlValidationError, match=message):
        validate_experiment_definition(data)


def test_load_yaml_requires_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- A\n- B\n", encoding="utf-8")

    with pytest.raises(YamlValidationError):
        load_yaml(str(path))
