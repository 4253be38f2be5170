# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import List, Mapping

logger = logging.getLogger(__name__)

# ${VAR}, ${VAR:-default}, ${VAR:+alt}, ${VAR:?message}; $$ escapes a dollar sign
_PATTERN = re.compile(r"\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([-+?])([^}]*))?\}")


class EnvironmentInterpolator:
    """
    Interpolates compose-style variable references in topology documents.
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str]) -> str:
        """
        Substitutes every variable reference in ``template``.

        An unset ``${VAR}`` becomes an empty string and is logged, as compose does.

        :param template: Text containing variable references.
        :param context: Variables available for substitution.
        :return: The interpolated text.
        :raises KeyError: For ``${VAR:?message}`` when VAR is unset or empty.
        """
        missing: List[str] = []

        def replace(match):
            if match.group(0) == "$$":
                return "$"
            name, modifier, alt = match.group(1), match.group(2), match.group(3)
            value = context.get(name)

            if modifier == "-":
                return value if value else alt
            if modifier == "+":
                return alt if value else ""
            if modifier == "?":
                if not value:
                    raise KeyError(alt or f"Variable {name} is required")
                return value
            if value is None:
                missing.append(name)
                return ""
            return value

        result = _PATTERN.sub(replace, template)
        for name in sorted(set(missing)):
            logger.warning("Variable %s is not set, substituting an empty string", name)
        return result
