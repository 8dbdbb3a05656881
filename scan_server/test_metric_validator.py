import unittest

from scan_server import config
from scan_server.metric_validator import MetricSet, coerce_metric, default_metric_set, validate_metrics


def good_payload(**overrides):
    payload = {
        "water_retention": 32.5,
        "inflammation_index": 28.0,
        "lymph_congestion_score": 41.0,
        "facial_fat_layer": 22.0,
        "definition_score": 63.0,
        "potential_ceiling": 0,
    }
    payload.update(overrides)
    return payload


class MetricValidatorTests(unittest.TestCase):
    def test_valid_payload_passes_through(self) -> None:
        metrics = validate_metrics(good_payload())
        self.assertEqual(metrics.water_retention, 32.5)
        self.assertEqual(metrics.definition_score, 63.0)
        self.assertEqual(metrics.potential_ceiling, 0.0)
        self.assertEqual(metrics.warnings, ())

    def test_all_keys_present_and_in_range(self) -> None:
        metrics = validate_metrics(good_payload(water_retention=250, definition_score=-4)).to_dict()
        self.assertEqual(sorted(metrics), sorted(config.ALL_METRICS))
        for value in metrics.values():
            self.assertIsInstance(value, float)
            self.assertGreaterEqual(value, 0.0)
            self.assertLessEqual(value, 100.0)

    def test_clamping(self) -> None:
        metrics = validate_metrics(good_payload(water_retention=150, inflammation_index=-30))
        self.assertEqual(metrics.water_retention, 100.0)
        self.assertEqual(metrics.inflammation_index, 0.0)

    def test_rounding_to_two_decimals(self) -> None:
        metrics = validate_metrics(good_payload(facial_fat_layer=33.33333))
        self.assertEqual(metrics.facial_fat_layer, 33.33)

    def test_ceiling_forced_to_zero(self) -> None:
        metrics = validate_metrics(good_payload(potential_ceiling=87))
        self.assertEqual(metrics.potential_ceiling, 0.0)

    def test_malformed_payloads_yield_defaults(self) -> None:
        defaults = default_metric_set().to_dict()
        for raw in ("", None, [good_payload()], 42, {}):
            with self.subTest(raw=raw):
                self.assertEqual(validate_metrics(raw).to_dict(), defaults)

    def test_bad_fields_replaced_individually(self) -> None:
        metrics = validate_metrics(good_payload(water_retention="high", inflammation_index=True,
                                                lymph_congestion_score=float("nan")))
        self.assertEqual(metrics.water_retention, config.DEFAULT_METRICS["water_retention"])
        self.assertEqual(metrics.inflammation_index, config.DEFAULT_METRICS["inflammation_index"])
        self.assertEqual(metrics.lymph_congestion_score, config.DEFAULT_METRICS["lymph_congestion_score"])
        self.assertEqual(metrics.definition_score, 63.0)

    def test_missing_key_uses_default(self) -> None:
        payload = good_payload()
        del payload["definition_score"]
        self.assertEqual(validate_metrics(payload).definition_score, 50.0)

    def test_low_spread_is_flagged_not_altered(self) -> None:
        raw = {name: 50 for name in config.SCORED_METRICS}
        metrics = validate_metrics(raw)
        for name in config.SCORED_METRICS:
            self.assertEqual(getattr(metrics, name), 50.0)
        self.assertEqual(len(metrics.warnings), 1)
        self.assertIn("Low metric spread", metrics.warnings[0])
        self.assertEqual(metrics.spread, 0.0)

    def test_idempotent(self) -> None:
        raw = good_payload(water_retention=101.257)
        self.assertEqual(validate_metrics(raw), validate_metrics(raw))

    def test_coerce_metric(self) -> None:
        self.assertEqual(coerce_metric(3), 3.0)
        self.assertIsNone(coerce_metric(False))
        self.assertIsNone(coerce_metric("12"))
        self.assertIsNone(coerce_metric(float("inf")))

    def test_metric_set_excludes_warnings_from_dict(self) -> None:
        metrics = MetricSet(10, 20, 30, 40, 50, warnings=("x",))
        self.assertNotIn("warnings", metrics.to_dict())
        self.assertEqual(metrics.scored_values(), [10, 20, 30, 40, 50])


if __name__ == "__main__":
    unittest.main()
