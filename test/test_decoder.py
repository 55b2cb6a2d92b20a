import json
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from core.decoder import decode_image_request, get_mapped_model_name, parse_model_mapping
from core.error_response import RelayError
from core.image_constants import validate_image_request
from core.models import ChannelType
from fakes import image_body, make_meta, make_snapshot


def _codes(body: bytes, channel_type=ChannelType.OPENAI):
    meta = make_meta(channel_type=channel_type)
    request, _ = decode_image_request(body, meta)
    with pytest.raises(RelayError) as exc_info:
        validate_image_request(request, make_snapshot())
    return exc_info.value


def test_decoder_fills_defaults():
    meta = make_meta()
    request, is_mapped = decode_image_request(b'{"prompt": "cat"}', meta)

    assert request.model == "dall-e-2"
    assert request.n == 1
    assert request.size == "1024x1024"
    assert is_mapped is False
    assert meta.origin_model_name == meta.actual_model_name == "dall-e-2"


@pytest.mark.parametrize(
    "channel_type, expected",
    [
        (ChannelType.ALI, "wanx-v1"),
        (ChannelType.BAIDU, "sd_xl"),
        (ChannelType.ZHIPU, "cogview-3"),
        (ChannelType.AZURE, "dall-e-2"),
    ],
)
def test_default_model_depends_on_channel(channel_type, expected):
    request, _ = decode_image_request(b'{"prompt": "cat"}', make_meta(channel_type=channel_type))
    assert request.model == expected


@pytest.mark.parametrize("body", [b"", b"{", b"[1, 2]", b'{"prompt": ""}', b'{"model": "dall-e-3"}', b'{"prompt": "x", "n": "many"}'])
def test_bad_bodies_are_invalid_image_request(body):
    with pytest.raises(RelayError) as exc_info:
        decode_image_request(body, make_meta())

    assert exc_info.value.code == "invalid_image_request"
    assert exc_info.value.status_code == 400


def test_model_mapping_records_origin_and_actual_names():
    meta = make_meta(model_mapping={"image-default": "dall-e-3"})
    request, is_mapped = decode_image_request(image_body(model="image-default"), meta)

    assert is_mapped is True
    assert request.model == "dall-e-3"
    assert meta.origin_model_name == "image-default"
    assert meta.actual_model_name == "dall-e-3"


def test_empty_mapping_value_is_not_a_mapping():
    assert get_mapped_model_name("dall-e-3", {"dall-e-3": ""}) == ("dall-e-3", False)
    assert get_mapped_model_name("dall-e-3", None) == ("dall-e-3", False)


def test_parse_model_mapping_accepts_json_and_dict():
    assert parse_model_mapping('{"a": "b"}') == {"a": "b"}
    assert parse_model_mapping({"a": "b"}) == {"a": "b"}
    assert parse_model_mapping("") == {}
    assert parse_model_mapping("not json") == {}
    assert parse_model_mapping("[1]") == {}


def test_unknown_model_is_rejected_before_n():
    error = _codes(image_body(model="midjourney", n=99))
    assert error.code == "invalid_model"


def test_n_out_of_range():
    error = _codes(image_body(n=2))
    assert error.code == "invalid_n"
    assert error.status_code == 400


def test_unsupported_size():
    error = _codes(image_body(size="256x256"))
    assert error.code == "invalid_size"


def test_unsupported_quality():
    error = _codes(image_body(model="dall-e-2", quality="hd"))
    assert error.code == "invalid_quality"


def test_prompt_too_long():
    error = _codes(image_body(model="dall-e-2", prompt="x" * 1001))
    assert error.code == "prompt_too_long"


def test_valid_request_passes_validation():
    request, _ = decode_image_request(image_body(quality="hd", size="1792x1024"), make_meta())
    validate_image_request(request, make_snapshot())


def test_extra_fields_survive_reserialisation():
    request, _ = decode_image_request(image_body(negative_prompt="blurry", seed=42), make_meta())
    data = json.loads(request.to_upstream_json())

    assert data["negative_prompt"] == "blurry"
    assert data["seed"] == 42
    assert "quality" not in data
