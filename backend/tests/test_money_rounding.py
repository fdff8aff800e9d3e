from __future__ import annotations

import unittest
from decimal import Decimal

from payrecon.utils.money import to_decimal, whole_units


class MoneyRoundingTestCase(unittest.TestCase):
    def test_whole_units_round_half_up(self):
        self.assertEqual(whole_units("50000"), 50000)
        self.assertEqual(whole_units("49999.5"), 50000)
        self.assertEqual(whole_units("49999.49"), 49999)
        self.assertEqual(whole_units(Decimal("10.50")), 11)
        self.assertEqual(whole_units(12000), 12000)

    def test_unparseable_amounts_become_zero(self):
        for raw in (None, "", "abc", "NaN", "Infinity", "1e"):
            with self.subTest(raw=raw):
                self.assertEqual(to_decimal(raw), Decimal("0"))
                self.assertEqual(whole_units(raw), 0)


if __name__ == "__main__":
    unittest.main()
