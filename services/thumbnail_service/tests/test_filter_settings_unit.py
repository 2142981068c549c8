import pytest
from fastapi import HTTPException

from conftest import SAMPLE_INSTRUCTION
from main import FilterSettings, ImageProcessingInstruction, apply_filter_settings, parse_filter_settings


def _instruction_with_emoji() -> ImageProcessingInstruction:
    data = dict(SAMPLE_INSTRUCTION)
    data["enhancements"] = {
        "filters": SAMPLE_INSTRUCTION["enhancements"]["filters"],
        "overlays": SAMPLE_INSTRUCTION["enhancements"]["overlays"] + [
            {"type": "emoji", "content": "🍣", "position": {"x": 1000, "y": 500}, "style": {"size": 96}},
        ],
    }
    return ImageProcessingInstruction.model_validate(data)


class TestParseFilterSettings:

    def test_absent_means_no_settings(self):
        assert parse_filter_settings(None) is None
        assert parse_filter_settings("  ") is None

    def test_ui_payload(self):
        settings = parse_filter_settings('{"contrast": true, "brightness": false, "saturation": true, "addEmoji": true}')
        assert settings == FilterSettings(contrast=True, brightness=False, saturation=True, add_emoji=True)

    @pytest.mark.parametrize("raw", ["{not json", "[true]", '{"contrast": "maybe"}'])
    def test_invalid_payload_is_a_client_error(self, raw):
        with pytest.raises(HTTPException) as exc:
            parse_filter_settings(raw)
        assert exc.value.status_code == 400


class TestApplyFilterSettings:

    def test_no_settings_keeps_everything(self):
        instruction = _instruction_with_emoji()
        assert apply_filter_settings(instruction, None) is instruction

    def test_only_enabled_filter_types_survive(self):
        result = apply_filter_settings(_instruction_with_emoji(), FilterSettings(saturation=True))
        assert [f.type for f in result.enhancements.filters] == ["saturation"]

    def test_emoji_overlays_follow_toggle(self):
        instruction = _instruction_with_emoji()
        without = apply_filter_settings(instruction, FilterSettings())
        with_emoji = apply_filter_settings(instruction, FilterSettings(add_emoji=True))
        assert [o.type for o in without.enhancements.overlays] == ["text"]
        assert [o.type for o in with_emoji.enhancements.overlays] == ["text", "emoji"]
