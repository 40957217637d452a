import threading
import pytest

from keypool.core.errors import CredentialNotFoundError, PoolExhaustedError
from keypool.core.manager import KeyPool
from keypool.core.types import PoolConfig, WindowKind, MINUTE_MS
from keypool.persistence.memory import MemoryStore

KEYS = ['key-alpha-0001', 'key-bravo-0002', 'key-charlie-0003']

@pytest.fixture
def pool(clock):
    return KeyPool(KEYS, store=MemoryStore(), clock=clock)

def _record(pool, identifier):
    return next(r for r in pool.snapshot_all(mask=False) if r.identifier == identifier)

def test_round_robin_visits_every_key_once(pool):
    served = [pool.acquire().identifier for _ in range(len(KEYS))]
    assert sorted(served) == sorted(KEYS)

def test_ties_follow_configuration_order(pool):
    served = [pool.acquire().identifier for _ in range(len(KEYS))]
    assert served == KEYS

def test_acquire_reports_method_and_snapshot(pool, clock):
    first = pool.acquire()
    second = pool.acquire()
    assert first.method == 'round-robin'
    assert second.method == 'cached-round-robin'
    assert first.totalAvailable == 3
    assert first.score == pytest.approx(1.0)
    assert first.snapshot.lastUsedAt == clock.now

def test_cache_expires_after_ttl(pool, clock):
    pool.acquire()
    clock.advance(5000)
    assert pool.acquire().method == 'round-robin'

def test_three_keys_exhaust_after_six_calls(clock):
    pool = KeyPool(KEYS, config=PoolConfig(perMinuteRequests=2), clock=clock)
    for _ in range(6):
        lease = pool.acquire()
        pool.record_success(lease.identifier, cost=1)

    for record in pool.snapshot_all(mask=False):
        assert record.windows.perMinuteRequests.current == 2

    with pytest.raises(PoolExhaustedError) as exc_info:
        pool.acquire()
    assert exc_info.value.retryable is True
    assert exc_info.value.retry_after_ms == MINUTE_MS

    pool.reset_all_limits()
    assert pool.acquire().identifier in KEYS

def test_exhaustion_heals_when_window_resets(clock):
    pool = KeyPool(['only-key-0001'], config=PoolConfig(perMinuteRequests=1), clock=clock)
    pool.record_success(pool.acquire().identifier, cost=1)
    with pytest.raises(PoolExhaustedError):
        pool.acquire()

    clock.advance(MINUTE_MS)
    assert pool.acquire().identifier == 'only-key-0001'

def test_limit_hit_excludes_key_immediately(pool):
    lease = pool.acquire()
    pool.record_success(lease.identifier, cost=1)
    assert _record(pool, lease.identifier).windows.perMinuteRequests.current == 1

    pool.report_limit_hit(lease.identifier, WindowKind.PER_MINUTE_REQUESTS)

    info = {i.kind: i for i in pool.get_rate_limit_info(lease.identifier)}
    assert info[WindowKind.PER_MINUTE_REQUESTS].current == 30
    assert info[WindowKind.PER_MINUTE_REQUESTS].isLimited is True

    served = {pool.acquire().identifier for _ in range(4)}
    assert lease.identifier not in served

def test_limit_hit_accepts_legacy_kind(pool):
    pool.report_limit_hit(KEYS[0], 'TPM')
    assert _record(pool, KEYS[0]).windows.perMinuteCost.current == 1_000_000

def test_five_failures_deactivate_once(pool):
    deactivated = []
    pool.on('keyDeactivated', deactivated.append)

    for _ in range(4):
        pool.record_failure(KEYS[0], 'TRANSIENT', 120)
    assert _record(pool, KEYS[0]).active is True

    pool.record_failure(KEYS[0], 'TRANSIENT', 120)
    assert _record(pool, KEYS[0]).active is False

    pool.record_failure(KEYS[0], 'TRANSIENT', 120)
    record = _record(pool, KEYS[0])
    assert record.active is False
    assert record.consecutiveErrors == 6
    assert record.lastError == 'TRANSIENT'
    assert deactivated == [KEYS[0]]

def test_deactivated_key_leaves_fresh_cache(pool):
    pool.acquire()
    for _ in range(5):
        pool.record_failure(KEYS[1], 'AUTH')

    served = {pool.acquire().identifier for _ in range(6)}
    assert KEYS[1] not in served

def test_success_resets_consecutive_errors(pool):
    for _ in range(4):
        pool.record_failure(KEYS[0], 'TRANSIENT')
    pool.record_success(KEYS[0], cost=10, latency_ms=200)
    for _ in range(4):
        pool.record_failure(KEYS[0], 'TRANSIENT')

    record = _record(pool, KEYS[0])
    assert record.active is True
    assert record.consecutiveErrors == 4
    assert record.successCount == 1
    assert record.averageLatency == 200

def test_fractional_cost_is_applied_with_the_success(pool):
    for _ in range(3):
        pool.record_failure(KEYS[0], 'TRANSIENT')
    pool.record_success(KEYS[0], cost=12.5)

    record = _record(pool, KEYS[0])
    assert record.consecutiveErrors == 0
    assert record.lastError is None
    assert record.successCount == 1
    assert record.windows.perMinuteRequests.current == 1
    assert record.windows.perDayRequests.current == 1
    assert record.windows.perMinuteCost.current == 13

def test_invalid_cost_still_records_success(pool):
    pool.record_failure(KEYS[0], 'TRANSIENT')
    pool.record_success(KEYS[0], cost=-40)
    pool.record_success(KEYS[0], cost='lots')
    pool.flush()

    record = _record(pool, KEYS[0])
    assert record.consecutiveErrors == 0
    assert record.successCount == 2
    assert record.windows.perMinuteRequests.current == 2
    assert record.windows.perMinuteCost.current == 0
    assert [e.cost for e in pool.backend.store.usage_events if e.success] == [0, 0]

def test_reactivate_restores_eligibility(clock):
    pool = KeyPool(['only-key-0001'], clock=clock)
    for _ in range(5):
        pool.record_failure('only-key-0001', 'AUTH')
    with pytest.raises(PoolExhaustedError):
        pool.acquire()

    pool.reactivate('only-key-0001')

    record = _record(pool, 'only-key-0001')
    assert record.active is True
    assert record.consecutiveErrors == 0
    assert record.lastError is None
    assert pool.acquire().identifier == 'only-key-0001'

def test_reactivate_unknown_key(pool):
    with pytest.raises(CredentialNotFoundError):
        pool.reactivate('missing-key-9999')

def test_rate_limit_info_unknown_key(pool):
    with pytest.raises(CredentialNotFoundError):
        pool.get_rate_limit_info('missing-key-9999')

def test_unknown_key_outcomes_are_ignored(pool):
    pool.record_success('missing-key-9999', cost=5)
    pool.record_failure('missing-key-9999', 'TRANSIENT')
    pool.report_limit_hit('missing-key-9999', 'RPM')
    assert pool.get_stats().total == 3

def test_limit_hits_count_toward_deactivation_by_default(pool):
    for _ in range(5):
        pool.report_limit_hit(KEYS[0], WindowKind.PER_MINUTE_REQUESTS)
    assert _record(pool, KEYS[0]).active is False

def test_limit_hits_can_be_excluded_from_error_count(clock):
    pool = KeyPool(KEYS, config=PoolConfig(limitHitsCountAsErrors=False), clock=clock)
    for _ in range(6):
        pool.report_limit_hit(KEYS[0], WindowKind.PER_MINUTE_REQUESTS)

    record = _record(pool, KEYS[0])
    assert record.active is True
    assert record.consecutiveErrors == 0
    assert record.lastError == 'perMinuteRequests rate limit exceeded'

def test_rotation_leaves_nearly_exhausted_key(clock):
    config = PoolConfig(perMinuteRequests=10, perDayRequests=10, perMinuteCost=10)
    pool = KeyPool(KEYS[:2], config=config, clock=clock)
    for _ in range(9):
        pool.record_success(KEYS[0], cost=1)

    rotations = []
    pool.on('proactiveRotation', lambda target, weakest, score: rotations.append((target, weakest)))

    lease = pool.acquire_with_rotation()
    assert lease.identifier == KEYS[1]
    assert lease.method == 'proactive-rotation'
    assert rotations == [(KEYS[1], KEYS[0])]

def test_rotation_falls_back_to_round_robin_when_healthy(pool):
    lease = pool.acquire_with_rotation()
    assert lease.method == 'round-robin'
    assert lease.identifier == KEYS[0]

def test_rotation_keeps_round_robin_cursor(pool):
    served = [pool.acquire_with_rotation().identifier for _ in range(len(KEYS))]
    assert served == KEYS
    assert pool.acquire().identifier == KEYS[0]

def test_rotation_raises_when_nothing_eligible(clock):
    pool = KeyPool(['only-key-0001'], clock=clock)
    pool.report_limit_hit('only-key-0001', WindowKind.PER_DAY_REQUESTS)
    with pytest.raises(PoolExhaustedError):
        pool.acquire_with_rotation()

def test_snapshot_masks_identifiers_by_default(pool):
    masked = pool.snapshot_all()
    assert [r.identifier for r in masked] == ['key-alph...0001', 'key-brav...0002', 'key-char...0003']

def test_snapshot_is_a_copy(pool):
    snapshot = pool.snapshot_all(mask=False)
    snapshot[0].windows.perMinuteRequests.current = 30
    snapshot[0].active = False
    record = _record(pool, KEYS[0])
    assert record.windows.perMinuteRequests.current == 0
    assert record.active is True

def test_stats_and_usage_report(pool):
    pool.record_success(KEYS[0], cost=42)
    for _ in range(5):
        pool.record_failure(KEYS[2], 'AUTH')

    stats = pool.get_stats()
    assert (stats.total, stats.active, stats.eligible, stats.deactivated) == (3, 2, 2, 1)
    assert stats.mode == 'durable'

    report = {row['apiKey']: row for row in pool.usage_report()}
    assert report['key-alph...0001']['rpmUsage'] == '1/30'
    assert report['key-alph...0001']['costUsage'] == '42/1000000'
    assert report['key-char...0003']['isActive'] is False

def test_refresh_cache_counts_eligible(pool):
    assert pool.refresh_cache() == 3
    pool.report_limit_hit(KEYS[0], 'RPM')
    assert pool.refresh_cache() == 2

def test_keys_are_split_and_deduplicated(clock):
    pool = KeyPool(['key-a-0001, key-b-0002', 'key-a-0001'], clock=clock)
    assert pool.identifiers == ['key-a-0001', 'key-b-0002']

def test_empty_pool_is_exhausted(clock):
    pool = KeyPool([], clock=clock)
    with pytest.raises(PoolExhaustedError) as exc_info:
        pool.acquire()
    assert exc_info.value.retry_after_ms is None

def test_concurrent_acquire_never_serves_a_slot_twice(clock):
    keys = [f'key-{i:02d}-threaded' for i in range(50)]
    pool = KeyPool(keys, clock=clock)
    served = []

    def worker():
        for _ in range(5):
            served.append(pool.acquire().identifier)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(served) == sorted(keys)

def test_concurrent_successes_are_all_counted(pool):
    threads = [
        threading.Thread(target=pool.record_success, args=(KEYS[0],), kwargs={'cost': 1})
        for _ in range(25)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    record = _record(pool, KEYS[0])
    assert record.successCount == 25
    assert record.totalRequests == 25
    for _, window in record.windows.items():
        assert window.current == 25
