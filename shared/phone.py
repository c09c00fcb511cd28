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
import unicodedata
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

import phonenumbers
from phonenumbers import geocoder

DISPLAY_LANGUAGE = "es"
MIN_PHONE_DIGITS = 6
MAX_PHONE_DIGITS = 15

# Offset between an ASCII capital letter and its regional indicator symbol.
_REGIONAL_INDICATOR_OFFSET = 127397


@dataclass(frozen=True)
class CountryOption:
    """A selectable country for phone input."""

    iso: str
    name: str
    dial_code: str
    flag: str


def iso_to_flag(iso: str) -> str:
    return "".join(chr(_REGIONAL_INDICATOR_OFFSET + ord(char)) for char in iso.upper())


def fold_text(value: str) -> str:
    """Lower-cases and strips combining accents ("Perú" -> "peru")."""
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(
        char for char in decomposed if not unicodedata.combining(char)
    ).lower()


def country_name(iso: str) -> str:
    example = phonenumbers.example_number(iso)
    if example is None:
        return iso
    return geocoder.country_name_for_number(example, DISPLAY_LANGUAGE) or iso


@lru_cache(maxsize=1)
def _country_options() -> tuple:
    options = [
        CountryOption(
            iso=iso,
            name=country_name(iso),
            dial_code=f"+{phonenumbers.country_code_for_region(iso)}",
            flag=iso_to_flag(iso),
        )
        for iso in phonenumbers.SUPPORTED_REGIONS
    ]
    options.sort(key=lambda option: (fold_text(option.name), option.iso))
    return tuple(options)


def build_country_options() -> List[CountryOption]:
    """
    Builds the list of countries the phone field offers.

    Returns:
        Options sorted by accent-insensitive Spanish display name.
    """
    return list(_country_options())


def find_country(options: List[CountryOption], iso: str) -> Optional[CountryOption]:
    wanted = (iso or "").strip().upper()
    for option in options:
        if option.iso == wanted:
            return option
    return None


def filter_country_options(
    options: List[CountryOption], search: str
) -> List[CountryOption]:
    """
    Filters options by name, ISO code or dial code, the way the picker does.

    Args:
        options: Options to filter.
        search: Free text typed by the user; may be a name ("peru"), an ISO
            code ("pe") or a dial code ("+51" / "51").
    """
    query = fold_text(search.strip())
    clean_dial = re.sub(r"[^\d+]", "", search.strip())
    has_dial_query = len(clean_dial) > 0

    if not query and not clean_dial:
        return list(options)

    dial_digits = clean_dial.replace("+", "", 1)
    results = []
    for option in options:
        by_name = query in fold_text(option.name)
        by_iso = query in fold_text(option.iso)
        by_dial = has_dial_query and clean_dial in option.dial_code
        by_dial_digits = has_dial_query and dial_digits in option.dial_code.replace(
            "+", "", 1
        )
        if by_name or by_iso or by_dial or by_dial_digits:
            results.append(option)
    return results


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def to_e164(dial_code: str, raw_phone: str) -> str:
    return f"+{_digits(dial_code)}{_digits(raw_phone)}"


def is_valid_phone(dial_code: str, raw_phone: str) -> bool:
    digits = _digits(raw_phone)
    if len(digits) < MIN_PHONE_DIGITS or len(digits) > MAX_PHONE_DIGITS:
        return False
    try:
        number = phonenumbers.parse(to_e164(dial_code, raw_phone), None)
    except phonenumbers.NumberParseException:
        return False
    return phonenumbers.is_possible_number(number)
