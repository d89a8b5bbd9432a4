"""
Parsing of Compose-style durations such as '30s', '1m30s' or '500ms'.
"""
import re
from typing import Union

_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001, "us": 0.000001}
_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|h|m|s)")


def parse_duration(value: Union[str, int, float, None], default: float = 0.0) -> float:
    """
    Converts a duration to seconds.

    Bare numbers are taken as seconds.
    """
    if value is None or value == "":
        return default
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip().lower()
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"Invalid duration '{value}'")
    return total
