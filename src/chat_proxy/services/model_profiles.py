"""Per-model request configuration.

Models differ in whether they accept a full conversation and which output
modalities they may be asked for. Rather than branching on model names at the
call site, the invocation adapter looks the model up in this table.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)

TEXT = "TEXT"
IMAGE = "IMAGE"
AUDIO = "AUDIO"
KNOWN_MODALITIES = frozenset({TEXT, IMAGE, AUDIO})


@dataclass(frozen=True)
class ModelProfile:
    """How requests for one model (or model family) must be shaped."""

    uses_full_history: bool = True
    response_modalities: tuple[str, ...] = ()
    supports_image_output: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ModelProfile":
        modalities = tuple(
            str(item).upper() for item in data.get("response_modalities") or ()
        )
        unknown = set(modalities) - KNOWN_MODALITIES
        if unknown:
            raise ValueError(f"Unknown response modalities: {sorted(unknown)}")
        supports_image = data.get("supports_image_output")
        if supports_image is None:
            supports_image = IMAGE in modalities
        return cls(
            uses_full_history=bool(data.get("uses_full_history", True)),
            response_modalities=modalities,
            supports_image_output=bool(supports_image),
        )


DEFAULT_PROFILE = ModelProfile()

_IMAGE_GENERATION = ModelProfile(
    uses_full_history=False,
    response_modalities=(TEXT, IMAGE),
    supports_image_output=True,
)

# Keys ending in "*" match by prefix; the longest matching prefix wins.
DEFAULT_PROFILES: dict[str, ModelProfile] = {
    "gemini-2.0-flash-preview-image-generation": _IMAGE_GENERATION,
    "gemini-2.0-flash-exp-image-generation": _IMAGE_GENERATION,
    "gemini-2.5-flash-image*": _IMAGE_GENERATION,
    "gemini-2.0-flash-exp": ModelProfile(supports_image_output=True),
}


@dataclass
class ModelProfileRegistry:
    """Resolve a model name to its :class:`ModelProfile`."""

    profiles: dict[str, ModelProfile] = field(
        default_factory=lambda: dict(DEFAULT_PROFILES)
    )
    default: ModelProfile = DEFAULT_PROFILE

    def resolve(self, model: str) -> ModelProfile:
        name = model.strip()
        if name.startswith("models/"):
            name = name[len("models/") :]

        exact = self.profiles.get(name)
        if exact is not None:
            return exact

        best: tuple[int, ModelProfile] | None = None
        for key, profile in self.profiles.items():
            if not key.endswith("*"):
                continue
            prefix = key[:-1]
            if name.startswith(prefix) and (best is None or len(prefix) > best[0]):
                best = (len(prefix), profile)
        return best[1] if best is not None else self.default

    def update(self, entries: Mapping[str, Mapping[str, Any]]) -> None:
        for key, value in entries.items():
            self.profiles[key] = ModelProfile.from_mapping(value)

    @classmethod
    def load(cls, path: Path | None) -> "ModelProfileRegistry":
        """Build the registry from defaults plus an optional JSON override file."""

        registry = cls()
        if path is None:
            return registry
        if not path.exists():
            logger.warning("Model profiles file %s not found; using defaults", path)
            return registry
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid model profiles file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Model profiles file {path} must contain an object")
        registry.update(data)
        logger.info("Loaded %d model profile override(s) from %s", len(data), path)
        return registry


__all__ = [
    "AUDIO",
    "DEFAULT_PROFILES",
    "IMAGE",
    "KNOWN_MODALITIES",
    "ModelProfile",
    "ModelProfileRegistry",
    "TEXT",
]
