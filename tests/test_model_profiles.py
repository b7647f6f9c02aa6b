from __future__ import annotations

import json

import pytest

from chat_proxy.services.model_profiles import (
    DEFAULT_PROFILES,
    IMAGE,
    TEXT,
    ModelProfile,
    ModelProfileRegistry,
)


def test_overrides_file_extends_defaults(tmp_path):
    path = tmp_path / "profiles.json"
    path.write_text(
        json.dumps(
            {
                "my-imagen-*": {
                    "uses_full_history": False,
                    "response_modalities": ["text", "image"],
                },
                "gemini-2.0-flash-exp": {"supports_image_output": False},
            }
        ),
        encoding="utf-8",
    )

    registry = ModelProfileRegistry.load(path)

    custom = registry.resolve("my-imagen-v2")
    assert custom == ModelProfile(
        uses_full_history=False,
        response_modalities=(TEXT, IMAGE),
        supports_image_output=True,
    )
    assert registry.resolve("gemini-2.0-flash-exp").supports_image_output is False
    assert registry.resolve("gemini-2.0-flash-preview-image-generation") == (
        DEFAULT_PROFILES["gemini-2.0-flash-preview-image-generation"]
    )


def test_longest_prefix_wins():
    registry = ModelProfileRegistry(
        profiles={
            "gemini-*": ModelProfile(response_modalities=(TEXT,)),
            "gemini-img-*": ModelProfile(uses_full_history=False),
        }
    )

    assert registry.resolve("gemini-img-1").uses_full_history is False
    assert registry.resolve("gemini-pro").response_modalities == (TEXT,)


def test_missing_file_falls_back_to_defaults(tmp_path):
    registry = ModelProfileRegistry.load(tmp_path / "absent.json")

    assert registry.profiles == DEFAULT_PROFILES


@pytest.mark.parametrize(
    "content",
    ["not json", "[1, 2]", json.dumps({"m": {"response_modalities": ["SMELL"]}})],
)
def test_invalid_files_are_rejected(tmp_path, content):
    path = tmp_path / "profiles.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ValueError):
        ModelProfileRegistry.load(path)
