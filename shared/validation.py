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

import re
from typing import Optional

from pydantic import BaseModel, field_validator

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 30
PASSWORD_MIN_LENGTH = 7

_USERNAME_PATTERN = re.compile(r"[a-zA-Z0-9._-]+")


def username_problem(username: str) -> Optional[str]:
    """Returns the first rule the username breaks, or None."""
    if len(username) < USERNAME_MIN_LENGTH:
        return "Mínimo 3 caracteres"
    if len(username) > USERNAME_MAX_LENGTH:
        return "Máximo 30"
    if not _USERNAME_PATTERN.fullmatch(username):
        return "Solo letras, números, . _ -"
    return None


def password_problem(password: str) -> Optional[str]:
    """Returns the first rule the password breaks, or None."""
    if len(password) < PASSWORD_MIN_LENGTH:
        return "Mínimo 7 letras o más"
    if not re.search(r"[A-Za-z]", password):
        return "Debe tener letras"
    if not re.search(r"\d", password):
        return "Debe tener al menos un número"
    if not re.search(r"[^\w\s]", password):
        return "Debe tener al menos un carácter especial"
    return None


class RegisterCredentials(BaseModel):
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        problem = username_problem(value)
        if problem:
            raise ValueError(problem)
        return value

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        problem = password_problem(value)
        if problem:
            raise ValueError(problem)
        return value
