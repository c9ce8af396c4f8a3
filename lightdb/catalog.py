from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
import json
import logging
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from lightdb.errors import SchemaError, SchemaErrorKind

logger = logging.getLogger(__name__)

SUPPORTED_VERSION = 3.0
FX_CHANNEL_COUNTS = (0, 9, 17)

# Wire flags that only matter to the command encoder; carried in command_hints.
_COMMAND_FLAG_KEYS = ("newPowerLightCommand", "newRGBLightCommand")


@dataclass(frozen=True)
class CctRange:
    min: Optional[int] = None
    max: Optional[int] = None

    @property
    def device_reported(self) -> bool:
        return self.min is None and self.max is None


@dataclass(frozen=True)
class Capabilities:
    supports_rgb: bool = False
    supports_cct_gm: bool = False
    supports_music: bool = False
    fx_channel_count: int = 0


@dataclass(frozen=True)
class NamedPattern:
    id: int
    name: str
    cmd: str
    default_cmd: Optional[str] = None
    icon: Optional[str] = None
    colors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LightModel:
    model_id: str
    image_url: str
    capabilities: Capabilities = field(default_factory=Capabilities)
    cct_range: CctRange = field(default_factory=CctRange)
    command_hints: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    link: Optional[str] = None
    source_patterns: Tuple[NamedPattern, ...] = ()
    fx_patterns: Tuple[NamedPattern, ...] = ()

    @property
    def new_power_command(self) -> bool:
        return bool(self.command_hints.get("newPowerLightCommand", False))

    @property
    def new_rgb_command(self) -> bool:
        return bool(self.command_hints.get("newRGBLightCommand", False))


@dataclass(frozen=True)
class Catalog:
    """An immutable, fully decoded light database.

    Instances are replaced wholesale on every successful sync, so holding a
    reference is always a consistent snapshot.
    """

    version: float
    entries: Tuple[LightModel, ...] = ()
    rejected: Tuple[str, ...] = ()
    _index: Optional[Mapping[str, LightModel]] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        index: Dict[str, LightModel] = {}
        for entry in self.entries:
            index.setdefault(entry.model_id, entry)
        object.__setattr__(self, "_index", MappingProxyType(index))

    def lookup(self, model_id: Union[str, int]) -> Optional[LightModel]:
        return self._index.get(normalize_model_id(model_id))

    def __contains__(self, model_id: object) -> bool:
        if not isinstance(model_id, (str, int)):
            return False
        return normalize_model_id(model_id) in self._index

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def model_ids(self) -> List[str]:
        return [entry.model_id for entry in self.entries]


def normalize_model_id(model_id: Union[str, int]) -> str:
    return str(model_id).strip()


def decode_catalog(raw: Union[bytes, str, Mapping[str, Any]]) -> Catalog:
    """Decode a light database document.

    The version gate runs before any entry is looked at: a newer document may
    use an entry shape this build cannot read. Malformed entries are skipped
    and listed in ``Catalog.rejected``.
    """
    document = _parse_document(raw)
    version = _parse_version(document.get("version"))
    if version > SUPPORTED_VERSION:
        raise SchemaError(SchemaErrorKind.UNSUPPORTED_VERSION, version=version)

    raw_entries = _first(document, "lights", "entries")
    if raw_entries is None:
        raw_entries = []
    if not isinstance(raw_entries, list):
        raise SchemaError(SchemaErrorKind.MALFORMED_DOCUMENT, "Light list must be an array")

    entries: List[LightModel] = []
    rejected: List[str] = []
    seen = set()
    for position, raw_entry in enumerate(raw_entries):
        try:
            model = decode_model(raw_entry)
            if model.model_id in seen:
                raise SchemaError(
                    SchemaErrorKind.MALFORMED_ENTRY,
                    f"Duplicate light type {model.model_id}",
                    model_id=model.model_id,
                )
        except SchemaError as exc:
            label = exc.model_id or f"#{position}"
            logger.warning("Skipping light entry %s: %s", label, exc)
            rejected.append(label)
            continue
        seen.add(model.model_id)
        entries.append(model)
    return Catalog(version=version, entries=tuple(entries), rejected=tuple(rejected))


def decode_model(meta: Any) -> LightModel:
    if not isinstance(meta, dict):
        raise SchemaError(SchemaErrorKind.MALFORMED_ENTRY, "Light entry must be an object")

    raw_id = _first(meta, "modelId", "type")
    if raw_id is None or isinstance(raw_id, bool) or not isinstance(raw_id, (str, int)):
        raise SchemaError(SchemaErrorKind.MALFORMED_ENTRY)
    model_id = normalize_model_id(raw_id)
    if not model_id:
        raise SchemaError(SchemaErrorKind.MALFORMED_ENTRY)

    image_url = _first(meta, "imageRef", "image")
    if not isinstance(image_url, str) or not image_url.strip():
        raise SchemaError(SchemaErrorKind.MALFORMED_ENTRY, f"Light type {model_id} has no image", model_id=model_id)

    return LightModel(
        model_id=model_id,
        image_url=image_url.strip(),
        capabilities=_parse_capabilities(meta, model_id),
        cct_range=_parse_cct_range(meta.get("cctRange"), model_id),
        command_hints=_parse_command_hints(meta, model_id),
        link=meta.get("link") if isinstance(meta.get("link"), str) else None,
        source_patterns=_parse_patterns(meta.get("sourcePatterns"), model_id),
        fx_patterns=_parse_patterns(meta.get("fxPatterns"), model_id),
    )


def encode_catalog(catalog: Catalog) -> Dict[str, Any]:
    lights = []
    for model in catalog.entries:
        caps = model.capabilities
        light: Dict[str, Any] = {
            "type": int(model.model_id) if model.model_id.isdigit() else model.model_id,
            "image": model.image_url,
            "supportRGB": caps.supports_rgb,
            "supportCCTGM": caps.supports_cct_gm,
            "supportMusic": caps.supports_music,
            "support17FX": caps.fx_channel_count == 17,
            "support9FX": caps.fx_channel_count == 9,
        }
        if not model.cct_range.device_reported:
            light["cctRange"] = {
                key: value
                for key, value in (("min", model.cct_range.min), ("max", model.cct_range.max))
                if value is not None
            }
        hints = dict(model.command_hints)
        for flag in _COMMAND_FLAG_KEYS:
            if flag in hints:
                light[flag] = hints.pop(flag)
        if hints:
            light["commandPatterns"] = hints
        if model.link:
            light["link"] = model.link
        if model.source_patterns:
            light["sourcePatterns"] = [_encode_pattern(p) for p in model.source_patterns]
        if model.fx_patterns:
            light["fxPatterns"] = [_encode_pattern(p) for p in model.fx_patterns]
        lights.append(light)
    version: Union[int, float] = int(catalog.version) if float(catalog.version).is_integer() else catalog.version
    return {"version": version, "lights": lights}


def _parse_document(raw: Union[bytes, str, Mapping[str, Any]]) -> Mapping[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SchemaError(SchemaErrorKind.MALFORMED_DOCUMENT, f"Database is not UTF-8: {exc}") from exc
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise SchemaError(SchemaErrorKind.MALFORMED_DOCUMENT, f"Database is not valid JSON: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise SchemaError(SchemaErrorKind.MALFORMED_DOCUMENT, "Database must be a JSON object")
    return raw


def _parse_version(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise SchemaError(SchemaErrorKind.MALFORMED_DOCUMENT, f"Missing or invalid database version: {value!r}")
    return float(value)


def _first(meta: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in meta and meta[key] is not None:
            return meta[key]
    return None


def _flag(meta: Mapping[str, Any], *keys: str) -> bool:
    return bool(_first(meta, *keys) or False)


def _parse_capabilities(meta: Mapping[str, Any], model_id: str) -> Capabilities:
    nested = meta.get("capabilities")
    if nested is not None and not isinstance(nested, dict):
        raise SchemaError(SchemaErrorKind.MALFORMED_ENTRY, f"Light type {model_id} has invalid capabilities", model_id=model_id)
    source: Mapping[str, Any] = nested or meta

    fx_count = _first(source, "fxChannelCount")
    if fx_count is None:
        if _flag(source, "support17FX"):
            fx_count = 17
        elif _flag(source, "support9FX"):
            fx_count = 9
        else:
            fx_count = 0
    if isinstance(fx_count, bool) or fx_count not in FX_CHANNEL_COUNTS:
        raise SchemaError(
            SchemaErrorKind.MALFORMED_ENTRY,
            f"Light type {model_id} has unsupported FX channel count {fx_count!r}",
            model_id=model_id,
        )

    cct_gm = _first(source, "supportCCTGM")
    if cct_gm is None:
        cct_gm = any(source.get(key) for key in ("supportsCCT", "supportsGM", "supportsCCTGM"))
    return Capabilities(
        supports_rgb=_flag(source, "supportRGB", "supportsRGB"),
        supports_cct_gm=bool(cct_gm),
        supports_music=_flag(source, "supportMusic", "supportsMusicMode"),
        fx_channel_count=int(fx_count),
    )


def _parse_cct_range(value: Any, model_id: str) -> CctRange:
    if value is None:
        return CctRange()
    if not isinstance(value, dict):
        raise SchemaError(SchemaErrorKind.MALFORMED_ENTRY, f"Light type {model_id} has invalid cctRange", model_id=model_id)
    bounds = []
    for key in ("min", "max"):
        bound = value.get(key)
        if bound is not None and (isinstance(bound, bool) or not isinstance(bound, (int, float))):
            raise SchemaError(
                SchemaErrorKind.MALFORMED_ENTRY,
                f"Light type {model_id} has non-numeric cctRange.{key}",
                model_id=model_id,
            )
        if bound is not None and not (math.isfinite(bound) and bound == int(bound)):
            raise SchemaError(
                SchemaErrorKind.MALFORMED_ENTRY,
                f"Light type {model_id} has non-integral cctRange.{key}: {bound!r}",
                model_id=model_id,
            )
        bounds.append(int(bound) if bound is not None else None)
    low, high = bounds
    if low is not None and high is not None and low > high:
        raise SchemaError(SchemaErrorKind.MALFORMED_ENTRY, f"Light type {model_id} has inverted cctRange", model_id=model_id)
    return CctRange(min=low, max=high)


def _parse_command_hints(meta: Mapping[str, Any], model_id: str) -> Mapping[str, Any]:
    hints: Dict[str, Any] = {}
    raw = _first(meta, "commandEncodingHints", "commandPatterns")
    if raw is not None:
        if not isinstance(raw, dict):
            raise SchemaError(SchemaErrorKind.MALFORMED_ENTRY, f"Light type {model_id} has invalid command hints", model_id=model_id)
        hints.update(raw)
    for flag in _COMMAND_FLAG_KEYS:
        if flag in meta and meta[flag] is not None:
            hints[flag] = bool(meta[flag])
    return MappingProxyType(hints)


def _parse_patterns(value: Any, model_id: str) -> Tuple[NamedPattern, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise SchemaError(SchemaErrorKind.MALFORMED_ENTRY, f"Light type {model_id} has invalid patterns", model_id=model_id)
    patterns = []
    for item in value:
        if not isinstance(item, dict) or not isinstance(item.get("id"), int) \
                or not isinstance(item.get("name"), str) or not isinstance(item.get("cmd"), str):
            raise SchemaError(SchemaErrorKind.MALFORMED_ENTRY, f"Light type {model_id} has an invalid pattern", model_id=model_id)
        colors = item.get("color") or []
        patterns.append(
            NamedPattern(
                id=item["id"],
                name=item["name"],
                cmd=item["cmd"],
                default_cmd=item.get("defaultCmd"),
                icon=item.get("icon"),
                colors=tuple(str(c) for c in colors) if isinstance(colors, list) else (),
            )
        )
    return tuple(patterns)


def _encode_pattern(pattern: NamedPattern) -> Dict[str, Any]:
    encoded: Dict[str, Any] = {"id": pattern.id, "name": pattern.name, "cmd": pattern.cmd}
    if pattern.default_cmd is not None:
        encoded["defaultCmd"] = pattern.default_cmd
    if pattern.icon is not None:
        encoded["icon"] = pattern.icon
    if pattern.colors:
        encoded["color"] = list(pattern.colors)
    return encoded


def collect_capability_counts(models: Iterable[LightModel]) -> Dict[str, int]:
    counts = {"rgb": 0, "cct_gm": 0, "music": 0, "fx": 0}
    for model in models:
        caps = model.capabilities
        counts["rgb"] += caps.supports_rgb
        counts["cct_gm"] += caps.supports_cct_gm
        counts["music"] += caps.supports_music
        counts["fx"] += caps.fx_channel_count > 0
    return counts
