"""Tests for webhook parsing and redelivery suppression."""

from conftest import TRIGGER

from deal_invoicing.redelivery import RecentSignalGuard, WebhookSignal, parse_webhook


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestParseWebhook:
    def test_standard_envelope(self):
        payload = {
            "event": "updated.deal",
            "current": {"id": 42, "stage_id": 3, "status": "open", TRIGGER: 70},
            "previous": {"id": 42, "stage_id": 2},
        }

        signal = parse_webhook(payload, TRIGGER)

        assert signal == WebhookSignal(
            deal_id=42, event="updated.deal", stage_id=3, status="open", trigger=70
        )
        assert signal.signature == "42|updated.deal|3|open|70"

    def test_data_envelope(self):
        signal = parse_webhook({"event": "added.deal", "data": {"id": "17"}}, TRIGGER)

        assert signal.deal_id == 17
        assert signal.event == "added.deal"

    def test_previous_only_deletion_from_meta(self):
        payload = {
            "meta": {"action": "delete", "entity": "deal"},
            "current": None,
            "previous": {"id": 42, TRIGGER: 74},
        }

        signal = parse_webhook(payload, TRIGGER)

        assert signal.deal_id == 42
        assert signal.event == "deleted.deal"
        assert signal.is_deal_deletion
        assert signal.trigger == 74

    def test_workflow_automation_body(self):
        signal = parse_webhook({"Deal ID": "42", "Invoice": "70", "Deal_stage_id": 5}, TRIGGER)

        assert signal.deal_id == 42
        assert signal.event == "workflow"
        assert signal.trigger == "70"
        assert signal.stage_id == 5
        assert not signal.is_deal_deletion

    def test_alternative_deal_id_keys(self):
        assert parse_webhook({"dealId": 8}, TRIGGER).deal_id == 8
        assert parse_webhook({"deal_id": "9"}, TRIGGER).deal_id == 9

    def test_missing_deal_id(self):
        signal = parse_webhook({"event": "updated.deal", "current": {"title": "x"}}, TRIGGER)

        assert signal.deal_id is None
        assert signal.signature.startswith("no-deal|updated.deal")


class TestRecentSignalGuard:
    def test_duplicate_within_ttl(self):
        clock = FakeClock()
        guard = RecentSignalGuard(ttl=60, clock=clock)

        assert not guard.check_and_remember("42|workflow|||70")
        clock.now = 30
        assert guard.check_and_remember("42|workflow|||70")

    def test_expires_after_ttl(self):
        clock = FakeClock()
        guard = RecentSignalGuard(ttl=60, clock=clock)
        guard.check_and_remember("sig")

        clock.now = 61

        assert not guard.check_and_remember("sig")
        assert len(guard) == 1

    def test_forget_allows_retry(self):
        guard = RecentSignalGuard()
        guard.check_and_remember("sig")

        guard.forget("sig")

        assert not guard.check_and_remember("sig")

    def test_evicts_oldest_when_full(self):
        clock = FakeClock()
        guard = RecentSignalGuard(ttl=1000, max_size=4, clock=clock)

        for index in range(5):
            clock.now = float(index)
            guard.check_and_remember(f"sig-{index}")

        assert len(guard) == 2
        assert guard.check_and_remember("sig-4")
        assert not guard.check_and_remember("sig-0")
