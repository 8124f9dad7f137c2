import pytest

from relocation_advisor.models import ProviderId
from relocation_advisor.services.rate_limiter import ProviderRateController


def test_calls_beyond_quota_are_refused(clock):
    rc = ProviderRateController({"news": 3}, clock=clock)
    for _ in range(3):
        assert rc.can_proceed(ProviderId.NEWS)
        rc.record_call(ProviderId.NEWS)
    assert not rc.can_proceed(ProviderId.NEWS)
    assert not rc.try_acquire(ProviderId.NEWS)


def test_unknown_provider_uses_conservative_default(clock):
    rc = ProviderRateController({}, default_quota=5, clock=clock)
    granted = [rc.try_acquire("mystery") for _ in range(7)]
    assert granted == [True] * 5 + [False] * 2


def test_wait_ms_is_non_increasing_toward_window_end(clock):
    rc = ProviderRateController({"geocode": 1}, clock=clock)
    assert rc.wait_ms("geocode") == 0
    assert rc.try_acquire("geocode")

    observed = []
    for _ in range(6):
        observed.append(rc.wait_ms("geocode"))
        clock.advance(10)
    assert observed[0] == 60000
    assert all(a >= b for a, b in zip(observed, observed[1:]))


def test_window_resets_after_sixty_seconds(clock):
    rc = ProviderRateController({"geocode": 2}, clock=clock)
    assert rc.try_acquire("geocode")
    assert rc.try_acquire("geocode")
    assert not rc.can_proceed("geocode")

    clock.advance(59.9)
    assert not rc.can_proceed("geocode")
    clock.advance(0.2)
    assert rc.can_proceed("geocode")
    assert rc.snapshot("geocode")["count"] == 0


def test_quota_rejection_backs_off_for_retry_after(clock):
    rc = ProviderRateController({"webSearch": 100}, clock=clock)
    rc.on_quota_rejected(ProviderId.WEB_SEARCH, 30)

    assert not rc.can_proceed(ProviderId.WEB_SEARCH)
    assert rc.in_backoff(ProviderId.WEB_SEARCH)
    assert rc.wait_ms(ProviderId.WEB_SEARCH) == 30000

    clock.advance(30)
    assert rc.can_proceed(ProviderId.WEB_SEARCH)
    assert not rc.in_backoff(ProviderId.WEB_SEARCH)


def test_quota_rejection_without_retry_after_uses_default(clock):
    rc = ProviderRateController({}, default_backoff_sec=60.0, clock=clock)
    rc.on_quota_rejected("summarize", None)
    assert rc.wait_ms("summarize") == 60000


def test_zero_retry_after_is_honoured(clock):
    rc = ProviderRateController({}, default_backoff_sec=60.0, clock=clock)
    rc.on_quota_rejected("news", 0)
    assert rc.wait_ms("news") == 0
    assert rc.can_proceed("news")
    assert not rc.in_backoff("news")


def test_providers_are_tracked_independently(clock):
    rc = ProviderRateController({"news": 1, "geocode": 1}, clock=clock)
    assert rc.try_acquire("news")
    assert not rc.try_acquire("news")
    assert rc.try_acquire("geocode")


def test_invalid_default_quota_rejected():
    with pytest.raises(ValueError):
        ProviderRateController(default_quota=0)
