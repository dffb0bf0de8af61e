"""Tests for Prometheus metrics helper functions."""

from __future__ import annotations

from prometheus_client import REGISTRY

from perp_mm.observability.metrics import (
    EQUITY,
    FENCE_REJECTIONS,
    QUOTE_CYCLES,
    QUOTE_DECISIONS,
    STATE_POLL_FAILURES,
    TRANSACTIONS_TOTAL,
    VENUE_RESUBSCRIPTIONS,
    record_cycle,
    record_decision,
    record_poll_failure,
    record_poll_latency,
    record_submission_latency,
    record_transaction,
    record_venue_resubscription,
    update_equity,
)


class TestMetricsHelpers:
    """Helper functions update the module-level collectors."""

    def test_record_cycle_by_outcome(self):
        run = QUOTE_CYCLES.labels(outcome="run")._value.get()
        skipped = QUOTE_CYCLES.labels(outcome="skipped")._value.get()

        record_cycle("run")
        record_cycle("run")
        record_cycle("skipped")

        assert QUOTE_CYCLES.labels(outcome="run")._value.get() == run + 2
        assert QUOTE_CYCLES.labels(outcome="skipped")._value.get() == skipped + 1

    def test_record_decision(self):
        before = QUOTE_DECISIONS.labels(instrument="SOL-PERP", decision="take")._value.get()
        record_decision("SOL-PERP", "take")
        assert QUOTE_DECISIONS.labels(instrument="SOL-PERP", decision="take")._value.get() == before + 1

    def test_transaction_counted_per_instrument(self):
        btc = TRANSACTIONS_TOTAL.labels(instrument="BTC-PERP", status="ok")._value.get()
        eth = TRANSACTIONS_TOTAL.labels(instrument="ETH-PERP", status="ok")._value.get()

        record_transaction(("BTC-PERP", "ETH-PERP"), "ok")

        assert TRANSACTIONS_TOTAL.labels(instrument="BTC-PERP", status="ok")._value.get() == btc + 1
        assert TRANSACTIONS_TOTAL.labels(instrument="ETH-PERP", status="ok")._value.get() == eth + 1

    def test_fence_rejection_also_counted_separately(self):
        rejected = FENCE_REJECTIONS.labels(instrument="XRP-PERP")._value.get()
        failed = FENCE_REJECTIONS.labels(instrument="ADA-PERP")._value.get()

        record_transaction(["XRP-PERP"], "fence_rejected")
        record_transaction(["ADA-PERP"], "failed")

        assert FENCE_REJECTIONS.labels(instrument="XRP-PERP")._value.get() == rejected + 1
        assert FENCE_REJECTIONS.labels(instrument="ADA-PERP")._value.get() == failed

    def test_update_equity_sets_gauge(self):
        update_equity(12_345.5)
        assert EQUITY._value.get() == 12_345.5

    def test_record_poll_failure(self):
        before = STATE_POLL_FAILURES._value.get()
        record_poll_failure()
        assert STATE_POLL_FAILURES._value.get() == before + 1

    def test_latency_histograms_observe(self):
        polls = REGISTRY.get_sample_value("perp_mm_state_poll_latency_seconds_count")
        submissions = REGISTRY.get_sample_value("perp_mm_submission_latency_seconds_count")

        record_poll_latency(0.2)
        record_submission_latency(0.4)

        assert REGISTRY.get_sample_value("perp_mm_state_poll_latency_seconds_count") == polls + 1
        assert REGISTRY.get_sample_value("perp_mm_submission_latency_seconds_count") == submissions + 1

    def test_record_venue_resubscription(self):
        before = VENUE_RESUBSCRIPTIONS.labels(venue="okx")._value.get()
        record_venue_resubscription("okx")
        assert VENUE_RESUBSCRIPTIONS.labels(venue="okx")._value.get() == before + 1
