import unittest

from fakes import START, FakeClock, ScriptedProvider

from llmchess_providers.errors import ErrorKind, MoveProviderError, make_error
from llmchess_providers.fallback import FallbackManager
from llmchess_providers.providers.base import ProviderKind
from llmchess_providers.registry import ProviderRegistry


def _manager(*providers, clock=None, fallback_id="local-engine"):
    registry = ProviderRegistry(list(providers))
    return FallbackManager(
        registry,
        failure_threshold=3,
        failure_window_s=300,
        disable_duration_s=600,
        fallback_provider_id=fallback_id,
        max_retries=3,
        clock=clock or FakeClock(),
    )


class CircuitBreakerTests(unittest.TestCase):
    def test_disabled_at_threshold_and_reenabled_after_duration(self):
        clock = FakeClock()
        fm = _manager(ScriptedProvider("primary", ["e2e4"]), clock=clock)
        fm.record_failure("primary")
        fm.record_failure("primary")
        self.assertTrue(fm.is_provider_available("primary"))
        fm.record_failure("primary")
        self.assertFalse(fm.is_provider_available("primary"))

        clock.advance(599)
        self.assertFalse(fm.is_provider_available("primary"))
        clock.advance(1)
        self.assertTrue(fm.is_provider_available("primary"))
        self.assertEqual(fm.get_provider_status()["primary"]["failures"], 0)

    def test_failures_outside_window_are_forgotten(self):
        clock = FakeClock()
        fm = _manager(ScriptedProvider("primary", ["e2e4"]), clock=clock)
        fm.record_failure("primary")
        fm.record_failure("primary")
        clock.advance(301)
        fm.record_failure("primary")
        self.assertTrue(fm.is_provider_available("primary"))
        self.assertEqual(fm.get_provider_status()["primary"]["failures"], 1)

    def test_success_closes_the_circuit(self):
        fm = _manager(ScriptedProvider("primary", ["e2e4"]))
        for _ in range(3):
            fm.record_failure("primary")
        fm.record_success("primary")
        self.assertTrue(fm.is_provider_available("primary"))
        self.assertEqual(fm.get_provider_status()["primary"]["failures"], 0)

    def test_reset_clears_all_state(self):
        fm = _manager(ScriptedProvider("primary", ["e2e4"]))
        for _ in range(3):
            fm.record_failure("primary")
        fm.reset()
        self.assertEqual(fm.get_provider_status(), {"primary": {"failures": 0, "last_failure_timestamp": 0, "disabled": False}})


class SelectionTests(unittest.TestCase):
    def setUp(self):
        self.primary = ScriptedProvider("primary", ["e2e4"])
        self.other = ScriptedProvider("other", ["e2e4"])
        self.engine = ScriptedProvider("local-engine", ["e2e4"], kind=ProviderKind.LOCAL_ENGINE)

    def _disable(self, fm, pid):
        for _ in range(3):
            fm.record_failure(pid)

    def test_preferred_when_available(self):
        fm = _manager(self.primary, self.other, self.engine)
        sel = fm.get_best_available_provider("primary")
        self.assertIs(sel.provider, self.primary)
        self.assertFalse(sel.is_fallback)

    def test_designated_fallback_before_others(self):
        fm = _manager(self.primary, self.other, self.engine)
        self._disable(fm, "primary")
        sel = fm.get_best_available_provider("primary")
        self.assertEqual(sel.provider_id, "local-engine")
        self.assertTrue(sel.is_fallback)

    def test_first_local_engine_when_designated_missing(self):
        fm = _manager(self.primary, self.other, self.engine, fallback_id="stockfish")
        self._disable(fm, "primary")
        self.assertEqual(fm.get_best_available_provider("primary").provider_id, "local-engine")

    def test_any_eligible_provider_last(self):
        fm = _manager(self.primary, self.other, self.engine)
        self._disable(fm, "primary")
        self._disable(fm, "local-engine")
        self.assertEqual(fm.get_best_available_provider("primary").provider_id, "other")
        self._disable(fm, "other")
        sel = fm.get_best_available_provider("primary")
        self.assertIsNone(sel.provider)
        self.assertIsNone(sel.provider_id)

    def test_unknown_preferred_uses_fallback(self):
        fm = _manager(self.primary, self.engine)
        sel = fm.get_best_available_provider("missing")
        self.assertEqual(sel.provider_id, "local-engine")
        self.assertTrue(sel.is_fallback)


class ExecuteWithFallbackTests(unittest.IsolatedAsyncioTestCase):
    async def test_rate_limited_primary_falls_back_to_engine(self):
        primary = ScriptedProvider("primary", [RuntimeError("rate limit exceeded")])
        engine = ScriptedProvider("local-engine", ["g1f3"], kind=ProviderKind.LOCAL_ENGINE)
        fm = _manager(primary, engine)
        delivered = []

        result = await fm.execute_with_fallback("primary", "primary-model", START, delivered.append)

        self.assertEqual(result.uci, "g1f3")
        self.assertEqual(result.provider_id, "local-engine")
        self.assertTrue(result.is_fallback)
        self.assertEqual(delivered, [result])
        self.assertEqual(engine.calls[0]["model_id"], "local-engine-model")
        status = fm.get_provider_status()
        self.assertEqual(status["primary"]["failures"], 1)
        self.assertFalse(status["primary"]["disabled"])
        self.assertEqual(status["local-engine"]["failures"], 0)

    async def test_null_move_reply_falls_back(self):
        primary = ScriptedProvider("primary", ["0000"])
        engine = ScriptedProvider("local-engine", ["g1f3"], kind=ProviderKind.LOCAL_ENGINE)
        fm = _manager(primary, engine)
        delivered = []

        result = await fm.execute_with_fallback("primary", None, START, delivered.append)

        self.assertEqual(result.uci, "g1f3")
        self.assertTrue(result.is_fallback)
        self.assertEqual(delivered, [result])
        self.assertEqual(len(engine.calls), 1)
        self.assertEqual(fm.get_provider_status()["primary"]["failures"], 1)

    async def test_illegal_move_counts_as_failure(self):
        primary = ScriptedProvider("primary", ["e2e5"])
        engine = ScriptedProvider("local-engine", ["d2d4"], kind=ProviderKind.LOCAL_ENGINE)
        fm = _manager(primary, engine)
        result = await fm.execute_with_fallback("primary", None, START)
        self.assertEqual(result.uci, "d2d4")
        self.assertEqual(fm.get_provider_status()["primary"]["failures"], 1)

    async def test_exhausted_request_is_not_substituted(self):
        err = make_error(ErrorKind.UNKNOWN, "primary", "boom")
        err.history = [make_error(ErrorKind.UNKNOWN, "primary", "boom") for _ in range(2)] + [err]
        primary = ScriptedProvider("primary", [err])
        engine = ScriptedProvider("local-engine", ["d2d4"], kind=ProviderKind.LOCAL_ENGINE)
        fm = _manager(primary, engine)
        delivered = []

        with self.assertRaises(MoveProviderError) as ctx:
            await fm.execute_with_fallback("primary", None, START, delivered.append)
        self.assertIs(ctx.exception, err)
        self.assertEqual(engine.calls, [])
        self.assertEqual(delivered, [])

    async def test_failed_fallback_raises_primary_error(self):
        primary = ScriptedProvider("primary", [RuntimeError("You exceeded your current quota")])
        engine = ScriptedProvider("local-engine", [RuntimeError("engine crashed")], kind=ProviderKind.LOCAL_ENGINE)
        fm = _manager(primary, engine)

        with self.assertRaises(MoveProviderError) as ctx:
            await fm.execute_with_fallback("primary", None, START)
        self.assertEqual(ctx.exception.kind, ErrorKind.QUOTA_EXCEEDED)
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        status = fm.get_provider_status()
        self.assertEqual(status["primary"]["failures"], 1)
        self.assertEqual(status["local-engine"]["failures"], 1)

    async def test_no_provider_available(self):
        fm = _manager()
        with self.assertRaises(MoveProviderError) as ctx:
            await fm.execute_with_fallback("primary", None, START)
        self.assertEqual(ctx.exception.kind, ErrorKind.PROVIDER_UNAVAILABLE)

    async def test_success_is_not_marked_fallback(self):
        primary = ScriptedProvider("primary", ["e2e4"])
        fm = _manager(primary, ScriptedProvider("local-engine", ["d2d4"], kind=ProviderKind.LOCAL_ENGINE))
        result = await fm.execute_with_fallback("primary", "primary-model", START)
        self.assertFalse(result.is_fallback)
        self.assertEqual(primary.calls[0]["model_id"], "primary-model")


if __name__ == "__main__":
    unittest.main()
