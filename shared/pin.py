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

import hashlib
import re

PIN_LENGTH = 4
_PIN_PATTERN = re.compile(r"^[0-9]{4}$")


def is_valid_pin(pin: str) -> bool:
    return bool(_PIN_PATTERN.fullmatch(pin or ""))


def normalize_pin(value: str) -> str:
    """Keeps only digits and truncates to the PIN length."""
    return re.sub(r"\D", "", value or "")[:PIN_LENGTH]


def hash_pin(pin: str) -> str:
    return hashlib.sha256(pin.encode("utf-8")).hexdigest()
