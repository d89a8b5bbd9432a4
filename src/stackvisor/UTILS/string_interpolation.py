"""
Utilities for string interpolation using resolved settings.
"""
import re
from typing import Dict, List, Tuple

# ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+alt}, ${VAR:?message}; $$ escapes a dollar
_PATTERN = re.compile(r'\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?:(:?)([-+?])([^}]*))?\}')


class EnvironmentInterpolator:
    """
    Utility for interpolating variables in manifest text.
    Supports ${VAR}, ${VAR:-default}, ${VAR:+value} and ${VAR:?message}.
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str]) -> Tuple[str, Dict[str, str]]:
        """
        Interpolates variables in the template string using the provided context.

        Unset plain ``${VAR}`` references resolve to an empty string, as in
        Compose. ``${VAR:?message}`` references that are unset are collected
        rather than raised so the caller can report all of them together.

        :param template: The string containing ${VAR} placeholders.
        :param context: The variables context.
        :return: The interpolated string and a mapping of required-but-unset
                 variable names to their messages.
        """
        missing: Dict[str, str] = {}

        def replace(match):
            if match.group(0) == '$$':
                return '$'
            var_name = match.group(1)
            colon = match.group(2)
            modifier = match.group(3)
            alt_value = match.group(4) or ''

            value = context.get(var_name)
            # With a colon, empty counts as unset
            is_set = value is not None and (value != '' or not colon)

            if modifier == '-':
                return value if is_set else alt_value
            if modifier == '+':
                return alt_value if is_set else ''
            if modifier == '?':
                if not is_set:
                    missing[var_name] = alt_value or f"{var_name} is required"
                    return ''
                return value
            return value if value is not None else ''

        return _PATTERN.sub(replace, template), missing

    @staticmethod
    def referenced_variables(template: str) -> List[str]:
        """Names of all variables referenced in the template, in order of first use."""
        names: List[str] = []
        for match in _PATTERN.finditer(template):
            name = match.group(1)
            if name and name not in names:
                names.append(name)
        return names
