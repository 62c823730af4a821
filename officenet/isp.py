"""
ISP configuration parsing and provider identity.

Offices store their ISPs loosely: a legacy single name, a JSON list, a list
that was JSON-encoded twice, or a section -> list map. Everything here turns
that into flat provider dicts and maps stored test labels back onto them.
"""

import base64
import json
import logging
import re
from collections import namedtuple

from .errors import ConfigParseError

logger = logging.getLogger(__name__)

GENERAL_SECTION = "General"

KIND_SCALAR = "scalar"
KIND_LIST = "list"
KIND_SECTION_MAP = "section_map"

MATCH_SECTION_HINT = "section_hint"
MATCH_LABEL = "label"
MATCH_PATTERN = "pattern"
MATCH_LEGACY = "legacy"

IspConfig = namedtuple("IspConfig", ["kind", "value"])

RE_PARENTHESIZED = re.compile(r"^(.+?)\s*\(([^()]+)\)$")
RE_SLUG = re.compile(r"[^a-z0-9]+")

ISP_ALIASES = [
    ("PLDT", ["pldt", "pldtr", "philippine long distance telephone company", "pldt inc", "pldt.com"]),
    ("Globe", ["globe", "globe telecom", "globe telecom inc", "globe.com.ph"]),
    ("Converge", ["converge", "converge ict", "converge ict solutions inc", "convergeict.com"]),
    ("Smart", ["smart", "smart communications", "smart communications inc", "smart.com.ph"]),
    ("Sky", ["sky", "sky broadband", "sky cable", "skycable.com"]),
    ("DITO", ["dito", "dito telecommunity", "dito cme", "dito.ph"]),
]


def normalize_isp_name(name):
    if not name or not str(name).strip():
        return ""
    cleaned = str(name).strip()
    lowered = cleaned.lower()
    for canonical, _ in ISP_ALIASES:
        if canonical.lower() == lowered:
            return canonical
    for canonical, aliases in ISP_ALIASES:
        if lowered in aliases:
            return canonical
        if any(alias in lowered for alias in aliases):
            return canonical
    return cleaned


def validate_isp_match(selected, detected):
    selected_canonical = normalize_isp_name(selected)
    detected_canonical = normalize_isp_name(detected)
    result = {
        "is_match": False,
        "confidence": 0,
        "selected_canonical": selected_canonical,
        "detected_canonical": detected_canonical,
    }
    if not selected_canonical or not detected_canonical:
        return result
    if selected_canonical == detected_canonical:
        result.update(is_match=True, confidence=100)
    elif selected_canonical.lower() in detected_canonical.lower() or detected_canonical.lower() in selected_canonical.lower():
        result.update(is_match=True, confidence=80)
    return result


def _decode_json(text):
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ConfigParseError(f"malformed ISP configuration: {text[:80]!r}") from exc


def parse_isp_config(value):
    """
    Parse one raw configuration field into an IspConfig.

    Bare text that is not JSON is a legacy scalar. JSON text that decodes to
    another string gets one more decode pass; if that pass fails, the first
    result is kept as a single-entry list. Text that looks like JSON but does
    not decode raises ConfigParseError.
    """
    if value is None:
        return IspConfig(KIND_LIST, [])
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return IspConfig(KIND_LIST, [])
        if text[0] not in '[{"':
            try:
                value = json.loads(text)
            except ValueError:
                return IspConfig(KIND_SCALAR, text)
        else:
            value = _decode_json(text)
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except ValueError:
                    return IspConfig(KIND_LIST, [value])
    if value is None or isinstance(value, bool):
        return IspConfig(KIND_LIST, [])
    if isinstance(value, dict):
        return IspConfig(KIND_SECTION_MAP, {str(section): _entries(items) for section, items in value.items()})
    if isinstance(value, (list, tuple)):
        return IspConfig(KIND_LIST, _entries(value))
    if isinstance(value, str):
        return IspConfig(KIND_SCALAR, value.strip())
    return IspConfig(KIND_SCALAR, str(value))


def _entries(items):
    if items is None:
        return []
    if isinstance(items, str):
        text = items.strip()
        if text.startswith("["):
            try:
                decoded = json.loads(text)
            except ValueError:
                decoded = None
            if isinstance(decoded, list):
                return _entries(decoded)
        return [text]
    if not isinstance(items, (list, tuple)):
        return [str(items)]
    values = []
    for item in items:
        if item is None or isinstance(item, (dict, list, tuple)):
            continue
        values.append(str(item))
    return values


def _slug(text):
    return RE_SLUG.sub("-", (text or "").strip().lower()).strip("-")


def generate_isp_id(name, section=GENERAL_SECTION, description=None, existing=()):
    parts = [_slug(name)]
    if description:
        parts.append(_slug(description))
    parts.append(_slug(section or GENERAL_SECTION))
    base_id = "-".join(part for part in parts if part)
    if not _slug(name):
        raw = f"{(name or '').strip().lower()}|{(description or '').strip().lower()}|{(section or '').strip().lower()}"
        encoded = base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")
        base_id = f"isp-{encoded}"
    if base_id not in existing:
        return base_id
    counter = 2
    while f"{base_id}-{counter}" in existing:
        counter += 1
    return f"{base_id}-{counter}"


def get_isp_display_name(provider):
    description = (provider.get("description") or "").strip()
    if description:
        return f"{provider['name']} ({description})"
    return provider["name"]


def get_isp_label(provider):
    """Label written on test rows; sectioned providers carry their section."""
    display_name = get_isp_display_name(provider)
    section = provider.get("section") or GENERAL_SECTION
    if section == GENERAL_SECTION:
        return display_name
    return f"{display_name} ({section})"


def make_provider(name, section=GENERAL_SECTION, description=None, existing=()):
    provider = {
        "id": generate_isp_id(name, section, description, existing),
        "name": name.strip(),
        "section": (section or GENERAL_SECTION).strip() or GENERAL_SECTION,
        "description": (description or "").strip() or None,
    }
    provider["display_name"] = get_isp_display_name(provider)
    provider["label"] = get_isp_label(provider)
    return provider


def split_description(entry):
    match = RE_PARENTHESIZED.match(entry.strip())
    if match:
        return match.group(1).strip(), match.group(2).strip()
    return entry.strip(), None


def _load_field(office, field):
    try:
        return parse_isp_config(office.get(field))
    except ConfigParseError as exc:
        logger.warning(
            "Office %s has malformed %s, falling back to legacy ISP: %s",
            office.get("id"),
            field,
            exc,
        )
        return None


def _sectioned_entries(config):
    if config is None:
        return []
    if config.kind == KIND_SCALAR:
        return [(GENERAL_SECTION, config.value)]
    if config.kind == KIND_LIST:
        return [(GENERAL_SECTION, entry) for entry in config.value]
    pairs = []
    for section, entries in config.value.items():
        section_name = section.strip() or GENERAL_SECTION
        pairs.extend((section_name, entry) for entry in entries)
    return pairs


def parse_isps_from_office(office):
    if not office:
        return []
    entries = []
    general = _load_field(office, "isps")
    if general is None:
        entries.extend(_sectioned_entries(_legacy_config(office)))
    else:
        entries.extend(_sectioned_entries(general))
    entries.extend(_sectioned_entries(_load_field(office, "section_isps")))

    providers = []
    seen = set()
    labels = set()
    for section, entry in entries:
        if not entry or not entry.strip():
            continue
        name, description = split_description(entry)
        key = (name.lower(), (description or "").lower(), section.lower())
        if key in seen:
            continue
        seen.add(key)
        provider = make_provider(name, section, description, [p["id"] for p in providers])
        if provider["label"].casefold() in labels:
            # Labels key schedules and test rows, so they stay unique per office.
            provider["label"] = f"{provider['label']} [{provider['id']}]"
        labels.add(provider["label"].casefold())
        providers.append(provider)

    if not providers:
        legacy = _legacy_config(office)
        if legacy is not None:
            providers.append(make_provider(legacy.value, GENERAL_SECTION))
    return providers


def _legacy_config(office):
    legacy = (office.get("isp") or "").strip() if isinstance(office.get("isp"), str) else ""
    if not legacy:
        return None
    return IspConfig(KIND_SCALAR, legacy)


def find_isp_by_id(office, isp_id):
    for provider in parse_isps_from_office(office):
        if provider["id"] == isp_id:
            return provider
    return None


def _same(left, right):
    if left is None or right is None:
        return False
    return left.strip().casefold() == right.strip().casefold()


def _labels_of(provider):
    return (provider["label"], provider["display_name"], provider["name"])


def match_label_to_provider(label, providers, section_hint=None):
    """
    Map a stored ISP label back onto one of `providers`.

    Priority: explicit section hint, exact label/display name, bare name,
    "Name (Section)" pattern, then legacy General. Returns (provider, kind).
    """
    label = (label or "").strip()
    if section_hint:
        for provider in providers:
            if not _same(provider["section"], section_hint):
                continue
            if any(_same(label, value) for value in _labels_of(provider)):
                return provider, MATCH_SECTION_HINT
        logger.debug("Section hint %r matched no provider for %r", section_hint, label)

    for field in ("label", "display_name"):
        for provider in providers:
            if _same(label, provider[field]):
                return provider, MATCH_LABEL
    bare = [provider for provider in providers if _same(label, provider["name"])]
    if bare:
        general = [provider for provider in bare if provider["section"] == GENERAL_SECTION]
        return (general or bare)[0], MATCH_LABEL

    match = RE_PARENTHESIZED.match(label)
    if match:
        synthesized = make_provider(match.group(1), match.group(2))
        return _known(synthesized, providers), MATCH_PATTERN

    synthesized = make_provider(label or "Unknown ISP", GENERAL_SECTION)
    return _known(synthesized, providers), MATCH_LEGACY


def _known(synthesized, providers):
    for provider in providers:
        if provider["id"] == synthesized["id"]:
            return provider
    return synthesized


def section_hint_from_raw(raw_data):
    if not raw_data:
        return None
    data = raw_data
    if isinstance(raw_data, (str, bytes, bytearray)):
        try:
            data = json.loads(raw_data)
        except ValueError:
            logger.warning("Ignoring malformed raw data on test row")
            return None
    if not isinstance(data, dict):
        return None
    section = data.get("section")
    if isinstance(section, str) and section.strip():
        return section.strip()
    return None


def match_test_to_provider(test, providers):
    return match_label_to_provider(test.get("isp"), providers, section_hint_from_raw(test.get("raw_data")))


def resolve_isp_label(office, value):
    """Resolve a provider id or a stored label to a provider for this office."""
    providers = parse_isps_from_office(office)
    for provider in providers:
        if provider["id"] == value:
            return provider
    provider, _ = match_label_to_provider(value, providers)
    return provider
