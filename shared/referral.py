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

import random
import string
from typing import Optional

_ALPHABET = string.digits + string.ascii_lowercase
SUFFIX_LENGTH = 4


def generate_referral_code(username: str, rng: Optional[random.Random] = None) -> str:
    """
    Builds a shareable referral code such as "JUAN-4KX9".

    Args:
        username: The referrer's username.
        rng: Optional random source, mostly for tests.
    """
    rng = rng or random.Random()
    suffix = "".join(rng.choice(_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{username}-{suffix}".upper()
