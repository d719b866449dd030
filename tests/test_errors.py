import unittest

from llmchess_providers.errors import (
    ErrorKind,
    MoveProviderError,
    classify_error,
    create_recovery_plan,
    handle_error,
    make_error,
)


class ClassifyErrorTests(unittest.TestCase):
    def test_message_rules(self):
        cases = {
            "rate limit exceeded": ErrorKind.RATE_LIMIT,
            "Error code: 429 - Too Many Requests": ErrorKind.RATE_LIMIT,
            "Incorrect API key provided": ErrorKind.API_KEY_INVALID,
            "Error code: 401": ErrorKind.API_KEY_INVALID,
            "API key not set": ErrorKind.API_KEY_MISSING,
            "Connection reset by peer": ErrorKind.NETWORK_ERROR,
            "failed to fetch": ErrorKind.NETWORK_ERROR,
            "Request timed out": ErrorKind.TIMEOUT,
            "You exceeded your current quota": ErrorKind.QUOTA_EXCEEDED,
            "illegal move e2e5": ErrorKind.INVALID_MOVE,
            "Provider llm unavailable": ErrorKind.PROVIDER_UNAVAILABLE,
            "something odd happened": ErrorKind.UNKNOWN,
        }
        for message, kind in cases.items():
            with self.subTest(message=message):
                self.assertEqual(classify_error(RuntimeError(message), "p").kind, kind)

    def test_first_matching_rule_wins(self):
        # mentions both a rate limit and a timeout; rate limit is checked first
        err = classify_error("429 rate limit, request timed out", "p")
        self.assertEqual(err.kind, ErrorKind.RATE_LIMIT)

    def test_classified_error_passes_through(self):
        original = make_error(ErrorKind.QUOTA_EXCEEDED, "")
        self.assertIs(classify_error(original, "llm"), original)
        self.assertEqual(original.provider_id, "llm")

    def test_unknown_keeps_detail(self):
        err = classify_error(ValueError("boom"), "p")
        self.assertEqual(err.kind, ErrorKind.UNKNOWN)
        self.assertEqual(err.message, "Unexpected error: boom")
        self.assertTrue(err.retryable)
        self.assertIsInstance(err.original, ValueError)

    def test_empty_exception_message_uses_type_name(self):
        err = classify_error(TimeoutError(), "p")
        self.assertEqual(err.kind, ErrorKind.TIMEOUT)


class HandleErrorTests(unittest.TestCase):
    def test_rate_limit_retryable_and_falls_back(self):
        advice = handle_error(RuntimeError("rate limit exceeded"), "primary")
        self.assertEqual(advice.error.kind, ErrorKind.RATE_LIMIT)
        self.assertTrue(advice.error.retryable)
        self.assertTrue(advice.should_retry)
        self.assertTrue(advice.should_fallback)
        self.assertEqual(advice.retry_delay_s, 10.0)

    def test_auth_errors_never_retried(self):
        for message in ("Incorrect API key provided", "API key not set"):
            advice = handle_error(message, "llm")
            self.assertFalse(advice.should_retry)
            self.assertTrue(advice.should_fallback)

    def test_quota_is_retryable_but_not_retried_here(self):
        advice = handle_error("quota exhausted", "llm")
        self.assertTrue(advice.error.retryable)
        self.assertFalse(advice.should_retry)
        self.assertTrue(advice.should_fallback)

    def test_invalid_move_retries_in_place(self):
        advice = handle_error(make_error(ErrorKind.INVALID_MOVE, "llm"))
        self.assertTrue(advice.should_retry)
        self.assertFalse(advice.should_fallback)
        self.assertIn("llm", advice.user_message)


class RecoveryPlanTests(unittest.TestCase):
    def _errs(self, *kinds):
        return [make_error(k, "p") for k in kinds]

    def test_no_errors(self):
        plan = create_recovery_plan([])
        self.assertTrue(plan.should_continue)
        self.assertEqual(plan.next_action, "retry")
        self.assertEqual(plan.delay_s, 0)

    def test_abort_at_max_retries(self):
        plan = create_recovery_plan(self._errs(ErrorKind.UNKNOWN, ErrorKind.UNKNOWN, ErrorKind.UNKNOWN), max_retries=3)
        self.assertFalse(plan.should_continue)
        self.assertEqual(plan.next_action, "abort")

    def test_repeated_rate_limit_falls_back(self):
        plan = create_recovery_plan(self._errs(ErrorKind.RATE_LIMIT, ErrorKind.RATE_LIMIT))
        self.assertEqual(plan.next_action, "fallback")

    def test_api_key_falls_back(self):
        plan = create_recovery_plan(self._errs(ErrorKind.API_KEY_MISSING))
        self.assertEqual(plan.next_action, "fallback")
        self.assertEqual(plan.delay_s, 0)

    def test_exponential_delay_is_capped(self):
        one = create_recovery_plan(self._errs(ErrorKind.NETWORK_ERROR), max_retries=5)
        two = create_recovery_plan(self._errs(ErrorKind.NETWORK_ERROR, ErrorKind.NETWORK_ERROR), max_retries=5)
        four = create_recovery_plan(self._errs(*[ErrorKind.NETWORK_ERROR] * 4), max_retries=5, max_delay_s=30)
        self.assertEqual(one.delay_s, 5)
        self.assertEqual(two.delay_s, 10)
        self.assertEqual(four.delay_s, 30)
        self.assertEqual(four.next_action, "retry")

    def test_non_retryable_last_error_falls_back(self):
        plan = create_recovery_plan(self._errs(ErrorKind.PROVIDER_UNAVAILABLE))
        self.assertEqual(plan.next_action, "fallback")
        self.assertEqual(plan.counts[ErrorKind.PROVIDER_UNAVAILABLE], 1)

    def test_error_history_starts_with_itself(self):
        err = make_error(ErrorKind.TIMEOUT, "p")
        self.assertIsInstance(err, MoveProviderError)
        self.assertEqual(err.history, [err])


if __name__ == "__main__":
    unittest.main()
