"""Message generation core.

Weighted JSON templates are picked at random and their placeholders are
filled from named id pools. Bodies are handled as opaque text: nothing here
parses or validates the JSON that comes out.
"""

from __future__ import annotations

import json
import logging
import math
import random
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import yaml

LOGGER = logging.getLogger("json_traffic")

FALLBACK_MESSAGE = "{}"
ID_TOKEN = "#ID#"
ID_PREFIX = "CALLER-"


class ConfigurationError(ValueError):
    """Raised when the generator cannot be started with the given settings."""


@dataclass(frozen=True)
class WeightedTemplate:
    weight: float
    text: str


def _parse_weight(raw: Any) -> float:
    try:
        weight = float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"template weight {raw!r} is not a number") from None
    if not math.isfinite(weight):
        raise ConfigurationError(f"template weight {raw!r} must be finite")
    if weight < 0:
        raise ConfigurationError(f"template weight {raw!r} cannot be negative")
    return weight


def normalize(raw: Iterable[Tuple[Any, str]]) -> Tuple[WeightedTemplate, ...]:
    """Validate raw ``(weight, text)`` pairs and scale the weights to sum to 1."""

    pairs = [(_parse_weight(weight), text) for weight, text in raw]
    if not pairs:
        raise ConfigurationError("at least one message template is required")

    total = sum(weight for weight, _ in pairs)
    if total <= 0:
        raise ConfigurationError("template weights must sum to a positive number")

    return tuple(WeightedTemplate(weight / total, text) for weight, text in pairs)


def _template_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


class TemplateStore:
    """Read-only set of normalized templates."""

    def __init__(self, templates: Sequence[WeightedTemplate], rng: Optional[random.Random] = None) -> None:
        self.templates: Tuple[WeightedTemplate, ...] = tuple(templates)
        self._rng = rng or random

    @classmethod
    def from_pairs(cls, raw: Iterable[Tuple[Any, str]], rng: Optional[random.Random] = None) -> "TemplateStore":
        return cls(normalize(raw), rng=rng)

    @classmethod
    def from_source(cls, source: Any, rng: Optional[random.Random] = None) -> "TemplateStore":
        """Build a store from a loaded template document.

        Two shapes are accepted. A mapping of weight to JSON body::

            {"70": {"id": "#ID#"}, "30": {"id": "#ID#", "vip": true}}

        or a list of objects, which allows repeated weights::

            [{"probability": 70, "template": {"id": "#ID#"}},
             {"probability": 30, "text": "{\\"raw\\": #ID#}"}]

        JSON values are serialized once here; ``text`` is used verbatim.
        """

        if isinstance(source, Mapping):
            pairs = [(weight, _template_text(body)) for weight, body in source.items()]
        elif isinstance(source, Sequence) and not isinstance(source, (str, bytes)):
            pairs = []
            for index, entry in enumerate(source):
                if not isinstance(entry, Mapping) or "probability" not in entry:
                    raise ConfigurationError(f"template entry {index} needs a 'probability' key")
                if "text" in entry:
                    text = entry["text"]
                    if not isinstance(text, str):
                        raise ConfigurationError(f"template entry {index}: 'text' must be a string")
                elif "template" in entry:
                    text = _template_text(entry["template"])
                else:
                    raise ConfigurationError(f"template entry {index} needs a 'template' or 'text' key")
                pairs.append((entry["probability"], text))
        else:
            raise ConfigurationError("templates must be a mapping or a list of entries")

        return cls.from_pairs(pairs, rng=rng)

    def __len__(self) -> int:
        return len(self.templates)

    def pick_random(self) -> str:
        """Return the text of a template chosen according to its probability.

        Falls back to ``{}`` when rounding leaves the cumulative sum short of
        the drawn value.
        """

        r = self._rng.random()
        cumulative = 0.0
        for template in self.templates:
            cumulative += template.weight
            if r < cumulative:
                return template.text
        return FALLBACK_MESSAGE


class IdPool:
    """Named lists of substitution values."""

    def __init__(self, pools: Optional[Mapping[str, Iterable[str]]] = None, rng: Optional[random.Random] = None) -> None:
        self._pools: Dict[str, Tuple[str, ...]] = {
            name: tuple(values) for name, values in (pools or {}).items()
        }
        self._rng = rng or random

    @classmethod
    def from_source(cls, source: Any, rng: Optional[random.Random] = None) -> "IdPool":
        if source is None:
            return cls(rng=rng)
        if not isinstance(source, Mapping):
            raise ConfigurationError("id lists must be a mapping of name to list")

        pools: Dict[str, Tuple[str, ...]] = {}
        for name, values in source.items():
            if not isinstance(values, list):
                raise ConfigurationError(f"id list {name!r} must be a list")
            pools[str(name)] = tuple(str(value) for value in values)
        return cls(pools, rng=rng)

    @property
    def names(self) -> Iterator[str]:
        return iter(self._pools)

    def sizes(self) -> Dict[str, int]:
        return {name: len(values) for name, values in self._pools.items()}

    def has_entries(self, name: str) -> bool:
        return bool(self._pools.get(name))

    def pick_random(self, name: str) -> Optional[str]:
        """Return a random entry of ``name`` or None when there is nothing to pick."""

        values = self._pools.get(name)
        if not values:
            return None
        return self._rng.choice(values)


class MessageGenerator:
    """Produce ready-to-send message bodies."""

    def __init__(self, templates: TemplateStore, ids: IdPool, rng: Optional[random.Random] = None) -> None:
        self.templates = templates
        self.ids = ids
        self._rng = rng or random
        # (name, quoted token pattern, bare token pattern), in pool order
        self._patterns = [
            (name, re.compile(re.escape(f'"##{name}##"')), re.compile(re.escape(f"#{name}#")))
            for name in ids.names
        ]

    def caller_id(self) -> str:
        return f"{ID_PREFIX}{self._rng.getrandbits(64)}"

    def generate(self) -> bytes:
        text = self.templates.pick_random()
        text = text.replace(ID_TOKEN, self.caller_id())

        for name, quoted, bare in self._patterns:
            if not self.ids.has_entries(name):
                continue
            # re.sub calls the replacement once per match, so each occurrence redraws
            text = quoted.sub(lambda _match, key=name: self.ids.pick_random(key), text)
            text = bare.sub(lambda _match, key=name: self.ids.pick_random(key), text)

        return text.encode("utf-8")


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"cannot read {path}: {exc}") from exc


def load_document(path: Path) -> Any:
    """Load a JSON or YAML document, chosen by file suffix."""

    suffix = path.suffix.lower()
    text = _read_text(path)

    try:
        if suffix in {".yaml", ".yml"}:
            return yaml.safe_load(text)
        if suffix == ".json":
            return json.loads(text)
    except (ValueError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"cannot parse {path}: {exc}") from exc
    raise ConfigurationError(f"unsupported file format: {suffix or path.name}")


_WHITESPACE = re.compile(r"[ \t\n\r]*")


def _skip_ws(text: str, index: int) -> int:
    return _WHITESPACE.match(text, index).end()


def raw_object_members(text: str) -> Optional[List[Tuple[str, str]]]:
    """Split a top-level JSON object into ``(key, raw value text)`` pairs.

    Values are returned exactly as written in the source. Returns None when
    the document is not an object. Raises ValueError on malformed JSON.
    """

    decoder = json.JSONDecoder()
    index = _skip_ws(text, 0)
    if text[index:index + 1] != "{":
        return None

    members: List[Tuple[str, str]] = []
    index = _skip_ws(text, index + 1)
    if text[index:index + 1] != "}":
        while True:
            key, index = decoder.raw_decode(text, index)
            if not isinstance(key, str):
                raise ValueError(f"object key expected at char {index}")
            index = _skip_ws(text, index)
            if text[index:index + 1] != ":":
                raise ValueError(f"':' expected at char {index}")
            start = _skip_ws(text, index + 1)
            _, index = decoder.raw_decode(text, start)
            members.append((key, text[start:index]))

            index = _skip_ws(text, index)
            separator = text[index:index + 1]
            if separator == "}":
                break
            if separator != ",":
                raise ValueError(f"',' or '}}' expected at char {index}")
            index = _skip_ws(text, index + 1)

    if _skip_ws(text, index + 1) != len(text):
        raise ValueError(f"extra data after char {index}")
    return members


def load_template_file(path: Path, rng: Optional[random.Random] = None) -> TemplateStore:
    """Load templates; bodies of a JSON weight mapping keep their source text."""

    if path.suffix.lower() == ".json":
        text = _read_text(path)
        try:
            members = raw_object_members(text)
        except ValueError as exc:
            raise ConfigurationError(f"cannot parse {path}: {exc}") from exc
        if members is not None:
            store = TemplateStore.from_pairs(members, rng=rng)
        else:
            store = TemplateStore.from_source(load_document(path), rng=rng)
    else:
        store = TemplateStore.from_source(load_document(path), rng=rng)
    LOGGER.info("Loaded %d templates from %s", len(store), path)
    return store


def load_id_list_file(path: Path, rng: Optional[random.Random] = None) -> IdPool:
    pool = IdPool.from_source(load_document(path), rng=rng)
    log_pool_sizes(pool)
    return pool


def log_pool_sizes(pool: IdPool) -> None:
    for name, count in pool.sizes().items():
        LOGGER.info("id list %s: %d entries", name, count)
