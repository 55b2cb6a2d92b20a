import json
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from utils import build_pricing_snapshot, load_config_file, normalize_options


def test_normalize_options_serialises_structured_values():
    options = normalize_options({
        "BillingByRequestEnabled": True,
        "ModelRatio": {"dall-e-3": 25},
        "QuotaPerUnit": 500000,
        "Empty": None,
    })

    assert options["BillingByRequestEnabled"] == "true"
    assert json.loads(options["ModelRatio"]) == {"dall-e-3": 25}
    assert options["QuotaPerUnit"] == "500000"
    assert options["Empty"] == ""


def test_load_config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("CONFIG_YAML", raising=False)
    monkeypatch.delenv("CONFIG_YAML_BASE64", raising=False)
    path = tmp_path / "api.yaml"
    path.write_text(
        "options:\n"
        "  ModelRatioEnabled: 'true'\n"
        "  GroupRatio:\n"
        "    default: 1\n"
        "    vip: 0.8\n"
        "image:\n"
        "  amounts:\n"
        "    dall-e-3: [1, 2]\n",
        encoding="utf-8",
    )

    config = load_config_file(str(path))
    snapshot = build_pricing_snapshot(config)

    assert snapshot.model_ratio_enabled is True
    assert snapshot.get_group_ratio("vip") == 0.8
    assert snapshot.image_generation_amounts["dall-e-3"] == (1, 2)


def test_missing_or_broken_config_file_gives_empty_config(tmp_path, monkeypatch):
    monkeypatch.delenv("CONFIG_YAML", raising=False)
    monkeypatch.delenv("CONFIG_YAML_BASE64", raising=False)
    broken = tmp_path / "broken.yaml"
    broken.write_text("options: [unclosed\n", encoding="utf-8")

    assert load_config_file(str(tmp_path / "missing.yaml")) == {}
    assert load_config_file(str(broken)) == {}


def test_database_options_override_file_options():
    config = {"options": {"BillingByRequestEnabled": "true", "ModelRatio": {"dall-e-3": 25}}}
    snapshot = build_pricing_snapshot(config, {"BillingByRequestEnabled": "false"})

    assert snapshot.billing_by_request_enabled is False
    assert snapshot.get_model_ratio("dall-e-3") == 25
