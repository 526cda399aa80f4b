import unittest
from unittest.mock import MagicMock

import requests

from buffett_dcf.dcf_engine import ValuationParameters, compute_valuation
from buffett_dcf.narrative import (
    NarrativePending,
    NarrativeUnavailable,
    RetryPolicy,
    SingleFlight,
    build_payload,
    build_prompt,
    extract_text,
    fetch_narrative,
)

ENDPOINT = "http://proxy.test/api/generate"


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, invalid_json=False):
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("not json")
        return self._payload


def _ok(text="Price is what you pay."):
    return _FakeResponse(200, {"candidates": [{"content": {"parts": [{"text": text}]}}]})


def _session(*outcomes):
    session = MagicMock()
    session.post.side_effect = list(outcomes)
    return session


class FetchNarrativeTests(unittest.TestCase):
    def setUp(self):
        self.sleeps = []

    def _fetch(self, session, policy=None):
        return fetch_narrative("prompt", ENDPOINT, session=session, policy=policy, sleep=self.sleeps.append)

    def test_first_attempt_success(self):
        session = _session(_ok())
        self.assertEqual(self._fetch(session), "Price is what you pay.")
        self.assertEqual(self.sleeps, [])
        args, kwargs = session.post.call_args
        self.assertEqual(args[0], ENDPOINT)
        self.assertEqual(kwargs["json"], build_payload("prompt"))

    def test_four_failures_then_success_backs_off(self):
        session = _session(
            _FakeResponse(500, {}),
            requests.ConnectionError("reset"),
            _FakeResponse(429, {}),
            _FakeResponse(503, {}),
            _ok("Be fearful when others are greedy."),
        )
        self.assertEqual(self._fetch(session), "Be fearful when others are greedy.")
        self.assertEqual(self.sleeps, [1.0, 2.0, 4.0, 8.0])
        self.assertEqual(session.post.call_count, 5)

    def test_exhausts_after_five_attempts(self):
        session = _session(*[_FakeResponse(500, {}) for _ in range(6)])
        with self.assertRaises(NarrativeUnavailable) as ctx:
            self._fetch(session)
        self.assertEqual(session.post.call_count, 5)
        self.assertEqual(ctx.exception.attempts, 5)
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(self.sleeps, [1.0, 2.0, 4.0, 8.0])

    def test_authorization_failure_is_terminal(self):
        for status in (401, 403):
            self.sleeps = []
            session = _session(_FakeResponse(status, {"error": "bad key"}), _ok())
            with self.assertRaises(NarrativeUnavailable) as ctx:
                self._fetch(session)
            self.assertEqual(session.post.call_count, 1)
            self.assertEqual(ctx.exception.status_code, status)
            self.assertEqual(self.sleeps, [])

    def test_empty_or_invalid_reply_is_retried(self):
        session = _session(
            _FakeResponse(200, {"candidates": []}),
            _FakeResponse(200, invalid_json=True),
            _ok(),
        )
        self.assertEqual(self._fetch(session), "Price is what you pay.")
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_custom_policy(self):
        session = _session(_FakeResponse(502, {}), _FakeResponse(502, {}))
        with self.assertRaises(NarrativeUnavailable):
            self._fetch(session, policy=RetryPolicy(max_attempts=2, base_delay=0.25))
        self.assertEqual(self.sleeps, [0.25])


class PromptTests(unittest.TestCase):
    def test_prompt_embeds_parameters_and_value(self):
        params = ValuationParameters.from_percentages(10, 15, 10, 3)
        valuation = compute_valuation(params)
        prompt = build_prompt(params, valuation)
        self.assertIn("10 亿", prompt)
        self.assertIn("15%", prompt)
        self.assertIn("3%", prompt)
        self.assertIn(f"{valuation['totalIntrinsicValue']:.2f}", prompt)

    def test_prompt_uses_display_units_for_small_cash_flow(self):
        params = ValuationParameters.from_percentages(0.5, 15, 10, 3)
        prompt = build_prompt(params, compute_valuation(params))
        self.assertIn("5000万", prompt)

    def test_payload_shape(self):
        payload = build_payload("hello", persona="persona")
        self.assertEqual(payload["contents"][0]["parts"][0]["text"], "hello")
        self.assertEqual(payload["systemInstruction"]["parts"][0]["text"], "persona")

    def test_extract_text(self):
        self.assertEqual(extract_text({"candidates": [{"content": {"parts": [{"text": "hi"}]}}]}), "hi")
        self.assertIsNone(extract_text({}))
        self.assertIsNone(extract_text(None))
        self.assertIsNone(extract_text({"candidates": [{"content": {"parts": [{"text": "  "}]}}]}))


class SingleFlightTests(unittest.TestCase):
    def test_duplicate_key_is_refused_while_pending(self):
        flight = SingleFlight()

        def outer():
            self.assertTrue(flight.is_pending("a"))
            with self.assertRaises(NarrativePending):
                flight.run("a", lambda: "dup")
            return flight.run("b", lambda: "other")

        self.assertEqual(flight.run("a", outer), "other")
        self.assertFalse(flight.is_pending("a"))

    def test_key_released_after_failure(self):
        flight = SingleFlight()

        def boom():
            raise NarrativeUnavailable("down")

        with self.assertRaises(NarrativeUnavailable):
            flight.run("a", boom)
        self.assertEqual(flight.run("a", lambda: "ok"), "ok")


if __name__ == "__main__":
    unittest.main()
