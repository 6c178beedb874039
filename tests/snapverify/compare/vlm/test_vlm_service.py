from __future__ import annotations

from unittest.mock import Mock

import orjson
import pytest
from PIL import Image, ImageDraw

from snapverify.compare.pixelmatch import DEFAULT_CONFIG as PIXELMATCH_DEFAULT_CONFIG
from snapverify.compare.pixelmatch import PixelmatchComparator
from snapverify.compare.types import (
    EQUAL_RESULT,
    NO_BASELINE_RESULT,
    DiffResult,
    ImageCompareInput,
    TestStatus,
)
from snapverify.compare.vlm.exceptions import (
    VlmEmptyResponseError,
    VlmResponseNotJsonError,
    VlmResponseSchemaError,
)
from snapverify.compare.vlm.service import (
    DEFAULT_CONFIG,
    FAILURE_MARKER,
    NO_DESCRIPTION,
    VlmService,
    parse_vlm_response,
    response_text,
)
from snapverify.compare.vlm.types import (
    DEFAULT_PROMPT,
    GeminiVlmConfig,
    OllamaVlmConfig,
    VlmProviderResponse,
)

INPUT = ImageCompareInput(
    baseline="baseline",
    image="image",
    diff_tollerance_percent=0.1,
    ignore_areas=[],
    save_diff_as_file=False,
)


def _pixelmatch_result(**overrides) -> DiffResult:
    params = {
        "status": TestStatus.UNRESOLVED,
        "diff_name": "diff.png",
        "pixel_mismatch_count": 100,
        "diff_percent": 2.5,
        "is_same_dimension": True,
    }
    params.update(overrides)
    return DiffResult(**params)


def _store(*names: str | None) -> Mock:
    """A store that hands out a fresh image per lookup, or None where asked."""
    store = Mock()
    store.get_image.side_effect = [
        Image.new("RGBA", (20, 20), (0, 0, 0, 255)) if name else None for name in names
    ]
    return store


def _service(
    pixelmatch_result: DiffResult,
    store: Mock | None = None,
    ollama: Mock | None = None,
    gemini: Mock | None = None,
) -> VlmService:
    pixelmatch = Mock(spec=PixelmatchComparator)
    pixelmatch.get_diff.return_value = pixelmatch_result
    return VlmService(
        store if store is not None else _store("baseline", "image", "diff"),
        pixelmatch=pixelmatch,
        providers={"ollama": ollama or Mock(), "gemini": gemini or Mock()},
    )


def _answer(identical: bool, description: str) -> VlmProviderResponse:
    return VlmProviderResponse(
        content=orjson.dumps({"identical": identical, "description": description}).decode()
    )


class TestVlmServiceGetDiff:
    def test_no_baseline(self):
        ollama = Mock()
        service = _service(NO_BASELINE_RESULT, ollama=ollama)

        result = service.get_diff(INPUT.model_copy(update={"baseline": None}), DEFAULT_CONFIG)

        assert result == NO_BASELINE_RESULT
        assert result.status == TestStatus.NEW
        assert result.pixel_mismatch_count == 0
        assert result.diff_name is None
        ollama.generate.assert_not_called()

    def test_pixelmatch_always_saves_diff(self):
        service = _service(EQUAL_RESULT)

        service.get_diff(INPUT, DEFAULT_CONFIG)

        data, config = service.pixelmatch.get_diff.call_args.args
        assert data.save_diff_as_file is True
        assert data.image == INPUT.image
        assert config == PIXELMATCH_DEFAULT_CONFIG

    def test_ok_skips_vlm(self):
        ollama = Mock()
        store = _store()
        service = _service(EQUAL_RESULT, store=store, ollama=ollama)

        result = service.get_diff(INPUT, DEFAULT_CONFIG)

        assert result.status == TestStatus.OK
        assert result.pixel_mismatch_count == 0
        assert result.diff_percent == 0
        ollama.generate.assert_not_called()
        store.get_image.assert_not_called()

    @pytest.mark.parametrize(
        ("identical", "description", "expected_status", "mismatch", "percent"),
        [
            (True, "minor antialiasing", TestStatus.OK, 100, 2.5),
            (
                False,
                "Button text changed from Submit to Send.",
                TestStatus.UNRESOLVED,
                500,
                12.5,
            ),
        ],
    )
    def test_vlm_verdict(self, identical, description, expected_status, mismatch, percent):
        pixelmatch_result = _pixelmatch_result(pixel_mismatch_count=mismatch, diff_percent=percent)
        ollama = Mock()
        ollama.generate.return_value = _answer(identical, description)
        service = _service(pixelmatch_result, ollama=ollama)

        result = service.get_diff(INPUT, DEFAULT_CONFIG)

        assert result.status == expected_status
        assert result.vlm_description == description
        assert result.pixel_mismatch_count == mismatch
        assert result.diff_percent == percent
        assert result.diff_name == pixelmatch_result.diff_name
        assert result.is_same_dimension is True

        config, images = ollama.generate.call_args.args
        assert config == DEFAULT_CONFIG
        assert len(images) == 3
        assert all(isinstance(img, bytes) and img.startswith(b"\x89PNG") for img in images)

    def test_images_are_fetched_in_order(self):
        store = _store("baseline", "image", "diff")
        ollama = Mock()
        ollama.generate.return_value = _answer(True, "same")
        service = _service(_pixelmatch_result(diff_name="the-diff"), store=store, ollama=ollama)

        service.get_diff(INPUT, DEFAULT_CONFIG)

        assert [c.args[0] for c in store.get_image.call_args_list] == [
            "baseline",
            "image",
            "the-diff",
        ]

    def test_empty_description_gets_default(self):
        ollama = Mock()
        ollama.generate.return_value = _answer(True, "")
        service = _service(_pixelmatch_result(), ollama=ollama)

        result = service.get_diff(INPUT, DEFAULT_CONFIG)

        assert result.status == TestStatus.OK
        assert result.vlm_description == NO_DESCRIPTION

    @pytest.mark.parametrize(
        "response",
        [
            VlmProviderResponse(content="Invalid JSON response from model"),
            VlmProviderResponse(content='{"identical": "yes", "description": "x"}'),
            VlmProviderResponse(content='{"description": "x"}'),
            VlmProviderResponse(content="[true]"),
            VlmProviderResponse(),
            VlmProviderResponse(content="", thinking=""),
        ],
    )
    def test_malformed_response_degrades(self, response):
        pixelmatch_result = _pixelmatch_result(pixel_mismatch_count=200, diff_percent=5)
        ollama = Mock()
        ollama.generate.return_value = response
        service = _service(pixelmatch_result, ollama=ollama)

        result = service.get_diff(INPUT, DEFAULT_CONFIG)

        assert result.status == TestStatus.UNRESOLVED
        assert FAILURE_MARKER in result.vlm_description
        assert result.pixel_mismatch_count == 200
        assert result.diff_percent == 5

    def test_provider_error_degrades(self):
        pixelmatch_result = _pixelmatch_result(pixel_mismatch_count=300, diff_percent=7.5)
        ollama = Mock()
        ollama.generate.side_effect = ConnectionRefusedError("Connection refused")
        service = _service(pixelmatch_result, ollama=ollama)

        result = service.get_diff(INPUT, DEFAULT_CONFIG)

        assert result.status == TestStatus.UNRESOLVED
        assert result.vlm_description == f"{FAILURE_MARKER}: Connection refused"
        assert result.pixel_mismatch_count == 300
        assert result.diff_percent == 7.5

    def test_degrade_is_repeatable(self):
        ollama = Mock()
        ollama.generate.side_effect = RuntimeError("boom")
        service = _service(_pixelmatch_result(), store=Mock(), ollama=ollama)
        service.store.get_image.side_effect = lambda name: Image.new("RGB", (4, 4))

        first = service.get_diff(INPUT, DEFAULT_CONFIG)
        second = service.get_diff(INPUT, DEFAULT_CONFIG)

        assert first == second
        assert first.status == TestStatus.UNRESOLVED

    def test_custom_model_and_temperature(self):
        ollama = Mock()
        ollama.generate.return_value = _answer(True, "No differences.")
        service = _service(_pixelmatch_result(), ollama=ollama)
        config = OllamaVlmConfig(model="llava:13b", prompt="Custom context", temperature=0.2)

        service.get_diff(INPUT, config)

        assert ollama.generate.call_args.args[0] == config

    def test_use_thinking(self):
        ollama = Mock()
        ollama.generate.return_value = VlmProviderResponse(
            content='{"identical": false, "description": "Content field"}',
            thinking='{"identical": true, "description": "Thinking field"}',
        )
        service = _service(_pixelmatch_result(), ollama=ollama)

        result = service.get_diff(INPUT, OllamaVlmConfig(use_thinking=True))

        assert result.status == TestStatus.OK
        assert result.vlm_description == "Thinking field"

    def test_missing_diff_image(self):
        pixelmatch_result = _pixelmatch_result(diff_name=None)
        ollama = Mock()
        store = _store("baseline", "image")
        service = _service(pixelmatch_result, store=store, ollama=ollama)

        result = service.get_diff(INPUT, DEFAULT_CONFIG)

        assert result == pixelmatch_result
        assert result.vlm_description is None
        ollama.generate.assert_not_called()

    def test_unavailable_diff_image(self):
        pixelmatch_result = _pixelmatch_result()
        ollama = Mock()
        service = _service(
            pixelmatch_result, store=_store("baseline", "image", None), ollama=ollama
        )

        result = service.get_diff(INPUT, DEFAULT_CONFIG)

        assert result == pixelmatch_result
        ollama.generate.assert_not_called()

    def test_gemini_provider_selected(self):
        ollama = Mock()
        gemini = Mock()
        gemini.generate.return_value = _answer(True, "No noticeable differences.")
        service = _service(_pixelmatch_result(), ollama=ollama, gemini=gemini)
        config = GeminiVlmConfig(model="gemini-1.5-pro", api_key="test-api-key")

        result = service.get_diff(INPUT, config)

        assert result.status == TestStatus.OK
        assert result.vlm_description == "No noticeable differences."
        assert gemini.generate.call_args.args[0] == config
        ollama.generate.assert_not_called()

    def test_gemini_without_api_key(self):
        service = VlmService(
            _store("baseline", "image", "diff"),
            pixelmatch=Mock(get_diff=Mock(return_value=_pixelmatch_result())),
        )

        result = service.get_diff(INPUT, GeminiVlmConfig(model="gemini-1.5-pro"))

        assert result.status == TestStatus.UNRESOLVED
        assert "Gemini API key is required" in result.vlm_description
        assert FAILURE_MARKER in result.vlm_description


class TestVlmServiceEndToEnd:
    def test_pixel_evidence_survives_override(self, store):
        baseline = Image.new("RGBA", (100, 100), (100, 100, 100, 255))
        image = baseline.copy()
        ImageDraw.Draw(image).rectangle((0, 0, 24, 9), fill=(255, 0, 0, 255))
        store.add("baseline", baseline)
        store.add("image", image)
        ollama = Mock()
        ollama.generate.return_value = _answer(True, "minor antialiasing")
        service = VlmService(store, providers={"ollama": ollama})

        result = service.get_diff(INPUT, DEFAULT_CONFIG)

        assert result.status == TestStatus.OK
        assert result.vlm_description == "minor antialiasing"
        assert result.pixel_mismatch_count == 250
        assert result.diff_percent == pytest.approx(2.5)
        assert result.diff_name in store.saved


class TestResponseHandling:
    @pytest.mark.parametrize(
        ("response", "use_thinking", "expected"),
        [
            (VlmProviderResponse(content="c", thinking="t"), False, "c"),
            (VlmProviderResponse(content="c", thinking="t"), True, "t"),
            (VlmProviderResponse(content="", thinking="t"), False, "t"),
            (VlmProviderResponse(content="c"), True, "c"),
        ],
    )
    def test_response_text(self, response, use_thinking, expected):
        assert response_text(response, use_thinking) == expected

    def test_response_text_empty(self):
        with pytest.raises(VlmEmptyResponseError):
            response_text(VlmProviderResponse(content="", thinking=None), False)

    def test_parse_not_json(self):
        with pytest.raises(VlmResponseNotJsonError):
            parse_vlm_response("not json")

    @pytest.mark.parametrize(
        "text",
        [
            '{"identical": 1, "description": "x"}',
            '{"identical": true}',
            '{"identical": true, "description": 5}',
            '"just a string"',
        ],
    )
    def test_parse_wrong_shape(self, text):
        with pytest.raises(VlmResponseSchemaError):
            parse_vlm_response(text)

    def test_parse_ignores_extra_keys(self):
        result = parse_vlm_response('{"identical": false, "description": "d", "score": 3}')
        assert result.identical is False
        assert result.description == "d"


class TestVlmServiceParseConfig:
    @pytest.fixture
    def service(self):
        return VlmService(Mock(), pixelmatch=Mock(), providers={})

    @pytest.mark.parametrize("config_json", ["", "invalid"])
    def test_defaults(self, service, config_json):
        assert service.parse_config(config_json) == DEFAULT_CONFIG

    def test_partial(self, service):
        assert service.parse_config('{"model":"llava:7b"}') == OllamaVlmConfig(model="llava:7b")

    def test_full(self, service):
        result = service.parse_config(
            '{"model":"llava:13b","prompt":"Custom prompt","temperature":0.2,"useThinking":true}'
        )
        assert result == OllamaVlmConfig(
            model="llava:13b", prompt="Custom prompt", temperature=0.2, use_thinking=True
        )

    def test_gemini_without_key_is_accepted(self, service):
        result = service.parse_config('{"provider":"gemini","model":"gemini-1.5-pro"}')
        assert isinstance(result, GeminiVlmConfig)
        assert result.api_key == ""
        assert result.prompt == DEFAULT_PROMPT

    def test_provider_switch_is_order_independent(self, service):
        result = service.parse_config(
            '{"model":"gemini-2.5-flash","apiKey":"k","temperature":0.3,"provider":"gemini"}'
        )
        assert result == GeminiVlmConfig(model="gemini-2.5-flash", api_key="k", temperature=0.3)

    def test_unknown_provider_keeps_default(self, service):
        result = service.parse_config('{"provider":"acme","model":"m"}')
        assert isinstance(result, OllamaVlmConfig)
        assert result.model == "m"

    @pytest.mark.parametrize(
        "config",
        [
            OllamaVlmConfig(model="llava:13b", temperature=0.7, use_thinking=True),
            GeminiVlmConfig(model="gemini-2.0-flash", prompt="p", api_key="secret"),
        ],
    )
    def test_round_trip(self, service, config):
        assert service.parse_config(config.model_dump_json(by_alias=True)) == config
