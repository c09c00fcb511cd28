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

import unittest

from shared import coerce


class CoerceTest(unittest.TestCase):

    def test_first_present_skips_none_only(self):
        row = {"a": None, "b": 0, "c": 5}
        self.assertEqual(coerce.first_present(row, "a", "b", "c"), 0)
        self.assertIsNone(coerce.first_present(row, "a", "missing"))

    def test_numbers(self):
        self.assertEqual(coerce.to_number(" 12.5 "), 12.5)
        self.assertEqual(coerce.to_number(""), 0)
        self.assertEqual(coerce.to_number("abc", 3), 3)
        self.assertEqual(coerce.to_number(True, 7), 7)
        self.assertEqual(coerce.to_number(float("inf"), 1), 1)
        self.assertIsNone(coerce.to_nullable_number(""))
        self.assertIsNone(coerce.to_nullable_number("x"))
        self.assertEqual(coerce.to_nullable_number("0"), 0)

    def test_text(self):
        self.assertEqual(coerce.to_text("  hi "), "hi")
        self.assertEqual(coerce.to_text("   ", "fallback"), "fallback")
        self.assertEqual(coerce.to_text(12, "fallback"), "fallback")
        self.assertEqual(coerce.to_id_text(12.9), "12")
        self.assertEqual(coerce.to_id_text(" 7 "), "7")
        self.assertEqual(coerce.to_id_text(None, "none"), "none")

    def test_is_truthy(self):
        for value in (None, False, 0, 0.0, float("nan"), ""):
            self.assertFalse(coerce.is_truthy(value), value)
        for value in (True, 1, -2.5, "false", [], {}):
            self.assertTrue(coerce.is_truthy(value), value)


if __name__ == "__main__":
    unittest.main()
