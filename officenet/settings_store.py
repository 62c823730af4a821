import copy

from .db import get_json, set_json


def deep_merge(defaults, overrides):
    if overrides is None:
        return copy.deepcopy(defaults)
    result = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def get_settings(key, defaults):
    saved = get_json("settings", key, None)
    return deep_merge(defaults, saved or {})


def save_settings(key, settings):
    if not isinstance(settings, dict):
        raise ValueError("settings payload must be an object")
    set_json("settings", key, settings)
