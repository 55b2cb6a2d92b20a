import json
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from core.env import option_bool
from core.error_response import RelayError
from core.models import ImageGenerationRequest
from core.pricing import (
    PER_REQUEST_BILLING,
    PricingSnapshot,
    PricingStore,
    apply_options,
    compute_image_quota,
)
from fakes import make_snapshot

# 0.04 为 1024x1024 dall-e-3 的单张美元价格
CHEAP_DALLE3 = {"size_ratios": {"dall-e-3": {"1024x1024": 0.04, "1024x1792": 0.08, "1792x1024": 0.08}}}

PER_REQUEST_OPTIONS = {
    "BillingByRequestEnabled": "true",
    "ModelRatioEnabled": "true",
    "ModelRatio2": json.dumps({"dall-e-3": 0.08}),
    "QuotaPerUnit": "500000",
}


def _request(**fields) -> ImageGenerationRequest:
    values = {"model": "dall-e-3", "prompt": "p", "n": 1, "size": "1024x1024"}
    values.update(fields)
    return ImageGenerationRequest(**values)


def test_default_pricing_truncates_before_multiplying_by_n():
    snapshot = make_snapshot(image=CHEAP_DALLE3)
    plan = compute_image_quota(snapshot, _request(n=2), "default", token_billing_enabled=False)

    assert plan.quota == 1600
    assert plan.model_ratio_string == "model ratio 20.00"
    assert plan.multiplier == "model ratio 20.00, group ratio 1.00"


def test_per_request_billing_when_token_opted_in():
    snapshot = make_snapshot(options=PER_REQUEST_OPTIONS, image=CHEAP_DALLE3)
    plan = compute_image_quota(snapshot, _request(n=1), "default", token_billing_enabled=True)

    assert plan.quota == 40000
    assert plan.model_ratio_string == PER_REQUEST_BILLING


def test_per_request_billing_uses_legacy_unit_when_model_ratio_disabled():
    options = dict(PER_REQUEST_OPTIONS, ModelRatioEnabled="false", QuotaPerUnit="1000")
    snapshot = make_snapshot(options=options, image=CHEAP_DALLE3)
    plan = compute_image_quota(snapshot, _request(), "default", token_billing_enabled=False)

    # QuotaPerUnit 不参与这一分支
    assert plan.quota == 40000
    assert plan.model_ratio_string == PER_REQUEST_BILLING


def test_per_request_without_ratio2_entry_falls_back_to_default_formula():
    options = dict(PER_REQUEST_OPTIONS, ModelRatio2=json.dumps({"dall-e-2": 0.02}))
    snapshot = make_snapshot(options=options, image=CHEAP_DALLE3)
    plan = compute_image_quota(snapshot, _request(n=1), "default", token_billing_enabled=True)

    assert plan.quota == 800
    assert plan.model_ratio_string == "model ratio 20.00"


def test_token_not_opted_in_and_model_ratio_enabled_uses_default_formula():
    snapshot = make_snapshot(options=PER_REQUEST_OPTIONS, image=CHEAP_DALLE3)
    plan = compute_image_quota(snapshot, _request(), "default", token_billing_enabled=False)

    assert plan.quota == 800


@pytest.mark.parametrize("n", [1, 2, 3, 4, 10])
def test_default_pricing_is_linear_in_n(n):
    snapshot = make_snapshot()
    single = compute_image_quota(snapshot, _request(model="dall-e-2", size="512x512", n=1), "default", False)
    many = compute_image_quota(snapshot, _request(model="dall-e-2", size="512x512", n=n), "default", False)

    assert many.quota == n * single.quota


def test_pricing_is_deterministic_for_same_inputs():
    snapshot = make_snapshot(options={"GroupRatio": json.dumps({"vip": 0.75})})
    plans = {
        compute_image_quota(snapshot, _request(size="1792x1024", quality="hd"), "vip", False).quota
        for _ in range(20)
    }
    assert len(plans) == 1


def test_group_ratio_scales_default_quota():
    snapshot = make_snapshot(options={"GroupRatio": json.dumps({"default": 1, "vip": 0.5})}, image=CHEAP_DALLE3)
    plan = compute_image_quota(snapshot, _request(), "vip", False)

    assert plan.quota == 400
    assert plan.multiplier == "model ratio 20.00, group ratio 0.50"


def test_hd_quality_multiplies_dalle3_cost():
    snapshot = make_snapshot()
    standard = compute_image_quota(snapshot, _request(), "default", False).quota
    hd_square = compute_image_quota(snapshot, _request(quality="hd"), "default", False).quota
    hd_wide = compute_image_quota(snapshot, _request(size="1792x1024", quality="hd"), "default", False).quota

    assert standard == 20000
    assert hd_square == 40000
    assert hd_wide == 60000


def test_unknown_size_fails_cost_ratio_lookup():
    snapshot = make_snapshot()
    with pytest.raises(RelayError) as exc_info:
        compute_image_quota(snapshot, _request(size="10x10"), "default", False)

    assert exc_info.value.code == "get_image_cost_ratio_failed"
    assert exc_info.value.status_code == 500


def test_missing_model_and_group_ratio_default_to_one():
    snapshot = make_snapshot(image={"size_ratios": {"my-model": {"1024x1024": 1}}})
    plan = compute_image_quota(snapshot, _request(model="my-model"), "no-such-group", False)

    assert plan.model_ratio == 1.0
    assert plan.group_ratio == 1.0
    assert plan.quota == 1000


@pytest.mark.parametrize("value", ["1", "t", "T", "TRUE", "true", "True"])
def test_option_bool_true_values(value):
    assert option_bool(value) is True


@pytest.mark.parametrize("value", [None, "", "0", "false", "yes", "on", " true", "tRuE", "2"])
def test_option_bool_everything_else_is_false(value):
    assert option_bool(value) is False


def test_malformed_ratio_option_keeps_previous_table():
    base = PricingSnapshot()
    snapshot = apply_options(base, {"ModelRatio": "{not json", "GroupRatio": json.dumps({"default": -1})})

    assert snapshot.model_ratio == base.model_ratio
    assert snapshot.group_ratio == base.group_ratio


def test_invalid_quota_per_unit_is_ignored():
    snapshot = apply_options(PricingSnapshot(), {"QuotaPerUnit": "abc"})
    assert snapshot.quota_per_unit == PricingSnapshot().quota_per_unit


def test_store_publishes_new_snapshot_without_touching_old_one():
    store = PricingStore()
    before = store.snapshot()

    after = store.update_options({"BillingByRequestEnabled": "true", "ModelRatio2": json.dumps({"dall-e-3": 0.1})})

    assert store.snapshot() is after
    assert after.billing_by_request_enabled is True
    assert after.get_model_ratio2("dall-e-3") == 0.1
    assert before.billing_by_request_enabled is False
    assert before.get_model_ratio2("dall-e-3") is None


def test_store_update_merges_with_existing_options():
    store = PricingStore()
    store.update_options({"BillingByRequestEnabled": "true"})
    snapshot = store.update_options({"ModelRatioEnabled": "true"})

    assert snapshot.billing_by_request_enabled is True
    assert snapshot.model_ratio_enabled is True


def test_snapshot_tables_are_read_only():
    snapshot = PricingSnapshot()
    with pytest.raises(TypeError):
        snapshot.model_ratio["dall-e-3"] = 0
