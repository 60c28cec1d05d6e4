import pytest

from errors import InvalidConfigError
from feedback import ChunkSizeAdvisor


def test_no_advice_without_enough_samples(db):
    advisor = ChunkSizeAdvisor(db, threshold_seconds=0.1, window=10, min_samples=5)
    advisor.record("ack", 5.0)

    advice = advisor.recommend(500)

    assert advice.recommended_chunk_size == 500
    assert not advice.sustained
    assert advice.mean_latency is None


def test_low_latency_keeps_chunk_size(db):
    advisor = ChunkSizeAdvisor(db, threshold_seconds=0.1, window=10, min_samples=5)
    advisor.record_many([("dequeue", 0.01)] * 10, worker_id="w1")

    advice = advisor.recommend(500)

    assert not advice.should_reduce
    assert advice.mean_latency == pytest.approx(0.01)


def test_sustained_latency_recommends_smaller_chunks(db):
    advisor = ChunkSizeAdvisor(db, threshold_seconds=0.1, window=10, min_samples=5)
    advisor.record_many([("dequeue", 0.01)] * 20 + [("ack", 0.4)] * 10)

    advice = advisor.recommend(500)

    assert advice.sustained
    assert advice.recommended_chunk_size == 250


def test_recommendation_never_drops_below_minimum(db):
    advisor = ChunkSizeAdvisor(db, threshold_seconds=0.1, window=5, min_samples=1, min_chunk_size=4)
    advisor.record_many([("ack", 1.0)] * 5)

    assert advisor.recommend(5).recommended_chunk_size == 4
    assert advisor.recommend(3).recommended_chunk_size == 3


def test_advice_does_not_touch_existing_batches(db, service):
    service.create_batch(total_records=100, chunk_size=50, batch_id="batch-f")
    advisor = ChunkSizeAdvisor(db, threshold_seconds=0.1, window=5, min_samples=1)
    advisor.record_many([("ack", 1.0)] * 5)

    advisor.recommend(50)

    assert service.get_manifest("batch-f").chunk_size == 50


def test_old_samples_are_pruned(db):
    advisor = ChunkSizeAdvisor(db, window=5, min_samples=1, retention=10)
    advisor.record_many([("ack", 0.01)] * 25)

    assert db.query_one("SELECT COUNT(*) AS c FROM latency_samples")["c"] == 10


def test_invalid_advisor_config(db):
    with pytest.raises(InvalidConfigError):
        ChunkSizeAdvisor(db, reduction_factor=1.5)
    with pytest.raises(InvalidConfigError):
        ChunkSizeAdvisor(db).recommend(0)
