# Copyright 2025 Google LLC
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
# ==============================================================================

"""Lenient coercion of loosely-typed database values."""

import math
from typing import Any, Mapping, Optional


def first_present(row: Mapping[str, Any], *keys: str) -> Any:
    """Returns the first value among `keys` that is present and not None."""
    for key in keys:
        value = row.get(key)
        if value is not None:
            return value
    return None


def _parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            parsed = float(text)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def to_number(value: Any, fallback: float = 0) -> float:
    parsed = _parse_number(value)
    return fallback if parsed is None else parsed


def to_nullable_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return _parse_number(value)


def to_text(value: Any, fallback: str = "") -> str:
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned if cleaned else fallback
    return fallback


def to_id_text(value: Any, fallback: str = "") -> str:
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned if cleaned else fallback
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if math.isfinite(value):
            return str(math.floor(value))
    return fallback


def is_truthy(value: Any) -> bool:
    """Truthiness as loosely-typed JSON columns are interpreted by the pages.

    Empty containers count as true; empty strings, zero and NaN do not.
    """
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True
