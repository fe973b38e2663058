import pytest

from avatar_worker.pipeline.errors import InsufficientCredits

SEGMENTS = [
    {"url": "https://cdn/1.mp4", "scene": 1, "type": "initial", "task_id": "a"},
    {"url": "https://cdn/2.mp4", "scene": 2, "type": "extended", "task_id": "b"},
]


@pytest.fixture
def ledger(services):
    return services.ledger


class TestBalance:
    def test_ensure_balance(self, ledger, db):
        db.set_balance("user-1", 3)
        assert ledger.ensure_balance("user-1", 3) == 3
        with pytest.raises(InsufficientCredits) as exc:
            ledger.ensure_balance("user-1", 4)
        assert exc.value.required == 4
        assert exc.value.available == 3

    def test_missing_balance_row_is_zero(self, ledger):
        assert ledger.get_balance("nobody") == 0

    def test_no_user_is_not_gated(self, ledger):
        assert ledger.ensure_balance(None, 50) == 0

    def test_reserve(self, ledger, db, make_record):
        record = make_record(model="sora2_pro_1080", number_of_scenes=3, duration=10)
        ledger.reserve(record, 6)
        job = db.rows("video_jobs")[0]
        assert job["credits_reserved"] == 6
        assert job["provider"] == "sora2"
        assert job["estimated_minutes"] == 1
        assert job["status"] == "pending"


class TestChargeGeneration:
    def test_charges_once(self, ledger, db, make_record):
        db.set_balance("user-1", 10)
        record = make_record(model="veo3", number_of_scenes=2, video_segments=SEGMENTS, is_final=True)

        first = ledger.charge_generation(record)
        second = ledger.charge_generation(record)

        assert first.charged
        assert first.amount == 6
        assert first.balance_after == 4
        assert not second.charged
        assert second.reason == "already_charged"
        assert db.balance("user-1") == 4
        assert len(db.rows("credit_transactions")) == 1

    def test_amount_counts_rendered_segments(self, ledger, make_record):
        record = make_record(model="sora2_pro_1080", number_of_scenes=3, video_segments=SEGMENTS[:1])
        assert ledger.amount_for(record) == 2

    def test_no_balance_row(self, ledger, make_record):
        result = ledger.charge_generation(make_record())
        assert not result.charged
        assert result.reason == "no_balance"

    def test_no_user(self, ledger, db, make_record):
        result = ledger.charge_generation(make_record(user_id=None))
        assert result.reason == "no_user"
        assert db.rows("credit_transactions") == []

    def test_marks_reservation_completed(self, ledger, db, make_record):
        db.set_balance("user-1", 10)
        record = make_record(number_of_scenes=2, video_segments=SEGMENTS)
        other = make_record(number_of_scenes=2, video_segments=SEGMENTS)
        ledger.reserve(record, 2)
        ledger.reserve(other, 2)

        ledger.charge_generation(record)

        statuses = {job["metadata"]["generation_id"]: job["status"] for job in db.rows("video_jobs")}
        assert statuses == {record.id: "completed", other.id: "pending"}


class TestRetroactiveCharge:
    def test_charges_uncharged_completed(self, ledger, db, make_record):
        db.set_balance("user-1", 10)
        charged = make_record(number_of_scenes=2, video_segments=SEGMENTS, is_final=True)
        make_record(number_of_scenes=2, video_segments=SEGMENTS, is_final=True)
        make_record(number_of_scenes=2, video_segments=SEGMENTS[:1])
        ledger.charge_generation(charged)

        summary = ledger.retroactive_charge(user_id="user-1")

        assert summary["checked"] == 2
        assert summary["charged"] == 1
        assert summary["skipped"] == 1
        assert summary["credits"] == 2
        assert db.balance("user-1") == 6

    def test_failures_are_collected(self, ledger, db, make_record):
        record = make_record(number_of_scenes=2, video_segments=SEGMENTS, is_final=True)
        db.rpc_error = RuntimeError("database unavailable")

        summary = ledger.retroactive_charge()

        assert summary["failed"] == 1
        assert summary["errors"] == [{"generation_id": record.id, "error": "database unavailable"}]
