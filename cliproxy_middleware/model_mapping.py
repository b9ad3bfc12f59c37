from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

OPUS_THINKING_MODEL = "gemini-claude-opus-4-5-thinking"
SONNET_THINKING_MODEL = "gemini-claude-sonnet-4-5-thinking"
FLASH_MODEL = "gemini-3-flash"

DEFAULT_EXACT_MAPPINGS: dict[str, str] = {
    "claude-opus-4-5-20251101": OPUS_THINKING_MODEL,
    "claude-sonnet-4-5-20250929": SONNET_THINKING_MODEL,
    "claude-haiku-4-5-20251001": FLASH_MODEL,
}


@dataclass(frozen=True, slots=True)
class PrefixMapping:
    prefix: str
    target: str


# Most specific prefixes first.
DEFAULT_PREFIX_MAPPINGS: tuple[PrefixMapping, ...] = (
    PrefixMapping("claude-opus", OPUS_THINKING_MODEL),
    PrefixMapping("claude-sonnet", SONNET_THINKING_MODEL),
    PrefixMapping("claude-haiku", FLASH_MODEL),
    PrefixMapping("gpt-4", SONNET_THINKING_MODEL),
    PrefixMapping("gpt-3", FLASH_MODEL),
)


class ModelTranslator:
    def __init__(
        self,
        exact: dict[str, str] | None = None,
        prefixes: list[PrefixMapping] | tuple[PrefixMapping, ...] | None = None,
    ) -> None:
        self._exact = dict(DEFAULT_EXACT_MAPPINGS if exact is None else exact)
        self._prefixes = tuple(DEFAULT_PREFIX_MAPPINGS if prefixes is None else prefixes)

    @property
    def exact(self) -> dict[str, str]:
        return dict(self._exact)

    @property
    def prefixes(self) -> tuple[PrefixMapping, ...]:
        return self._prefixes

    def map_model(self, model: str) -> str:
        mapped = self._exact.get(model)
        if mapped is not None:
            return mapped
        for rule in self._prefixes:
            if model.startswith(rule.prefix):
                return rule.target
        return model


_DEFAULT_TRANSLATOR = ModelTranslator()


def map_model(model: str) -> str:
    return _DEFAULT_TRANSLATOR.map_model(model)


def load_model_translator(path: str | Path | None) -> ModelTranslator:
    if path is None:
        return ModelTranslator()

    file_path = Path(path)
    with file_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{file_path}'.")

    exact = dict(DEFAULT_EXACT_MAPPINGS)
    exact.update(_parse_exact(raw.get("exact"), file_path))
    prefixes = _parse_prefixes(raw.get("prefixes"), file_path)
    return ModelTranslator(exact=exact, prefixes=[*prefixes, *DEFAULT_PREFIX_MAPPINGS])


def _parse_exact(value: Any, file_path: Path) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'exact' must be a mapping in '{file_path}'.")
    parsed: dict[str, str] = {}
    for source, target in value.items():
        if not isinstance(source, str) or not isinstance(target, str):
            raise ValueError(
                f"'exact' entries must map strings to strings in '{file_path}'."
            )
        if source.strip() and target.strip():
            parsed[source.strip()] = target.strip()
    return parsed


def _parse_prefixes(value: Any, file_path: Path) -> list[PrefixMapping]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'prefixes' must be a list in '{file_path}'.")
    parsed: list[PrefixMapping] = []
    for item in value:
        if not isinstance(item, dict):
            raise ValueError(f"'prefixes' entries must be mappings in '{file_path}'.")
        prefix = item.get("prefix")
        target = item.get("target")
        if not isinstance(prefix, str) or not isinstance(target, str):
            raise ValueError(
                f"'prefixes' entries need string 'prefix' and 'target' in '{file_path}'."
            )
        if prefix.strip() and target.strip():
            parsed.append(PrefixMapping(prefix.strip(), target.strip()))
    return parsed
