import unittest

from buffett_dcf.chart import build_chart_frame, chart_rows
from buffett_dcf.dcf_engine import ValuationParameters, compute_valuation


class ChartTests(unittest.TestCase):
    def setUp(self):
        self.valuation = compute_valuation(ValuationParameters.from_percentages(10, 15, 10, 3))

    def test_frame_is_indexed_by_year(self):
        df = build_chart_frame(self.valuation)
        self.assertEqual(list(df.index), list(range(1, 11)))
        self.assertEqual(list(df.columns), ["fcf", "pvFcf", "cumulativePv"])
        self.assertAlmostEqual(df["cumulativePv"].iloc[-1], self.valuation["stage1PresentValue"], places=9)

    def test_rows_are_rounded_and_labelled(self):
        rows = chart_rows(self.valuation)
        self.assertEqual(len(rows), 10)
        self.assertEqual(rows[0]["year"], "Year 1")
        self.assertEqual(rows[0]["fcf"], 11.5)
        self.assertEqual(rows[-1]["year"], "Year 10")

    def test_custom_label(self):
        rows = chart_rows(self.valuation, label="第{year}年")
        self.assertEqual(rows[2]["year"], "第3年")

    def test_infeasible_valuation_has_no_rows(self):
        self.assertEqual(chart_rows(None), [])
        self.assertTrue(build_chart_frame(None).empty)


if __name__ == "__main__":
    unittest.main()
