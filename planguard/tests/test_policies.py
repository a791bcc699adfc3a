"""
Enforcement policy tests.

Policies are pure evaluators, so these run without a database.
"""
import pytest
from datetime import datetime, timedelta, timezone

from planguard.features.policies.base import PolicyContext, PolicyResult
from planguard.features.policies.boolean import BooleanPolicy
from planguard.features.policies.fixed_limit import FixedLimitPolicy
from planguard.features.policies.frequency import FrequencyPolicy, parse_window
from planguard.features.policies.level import LevelPolicy
from planguard.features.policies.registry import PolicyRegistry, UnknownEntitlementTypeError, _BUILDERS
from planguard.models.entitlement import EntitlementType

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _ctx(value, current_usage=None, metadata=None):
    return PolicyContext(
        user_id="user_alice",
        feature_key="feature",
        value=value,
        now=NOW,
        current_usage=current_usage,
        metadata=metadata or {},
    )


class TestFixedLimitPolicy:
    def test_allows_below_limit(self):
        result = FixedLimitPolicy().evaluate(_ctx(5, current_usage=4))
        assert result.allowed is True
        assert result.metadata == {"limit": 5, "used": 4, "remaining": 1}

    def test_denies_at_limit(self):
        result = FixedLimitPolicy().evaluate(_ctx(5, current_usage=5))
        assert result.allowed is False
        assert result.reason == "Limit of 5 reached"
        assert result.metadata["remaining"] == 0

    def test_zero_limit_always_denies(self):
        assert FixedLimitPolicy().evaluate(_ctx(0, current_usage=0)).allowed is False

    def test_missing_usage_counts_as_zero(self):
        assert FixedLimitPolicy().evaluate(_ctx(1, current_usage=None)).allowed is True


class TestBooleanPolicy:
    def test_true_allows(self):
        assert BooleanPolicy().evaluate(_ctx(True)).allowed is True

    @pytest.mark.parametrize("value", [False, None, "true", 1])
    def test_anything_but_true_denies(self, value):
        result = BooleanPolicy().evaluate(_ctx(value))
        assert result.allowed is False
        assert result.reason == "Feature not included in your plan"


class TestLevelPolicy:
    def test_higher_level_allows(self):
        result = LevelPolicy().evaluate(_ctx(3, metadata={"requiredLevel": 2}))
        assert result.allowed is True

    def test_lower_level_denies_with_both_levels(self):
        result = LevelPolicy().evaluate(_ctx(2, metadata={"requiredLevel": 3}))
        assert result.allowed is False
        assert result.reason == "Requires level 3, you have level 2"
        assert result.metadata == {"userLevel": 2, "requiredLevel": 3}

    def test_required_level_defaults_to_zero(self):
        assert LevelPolicy().evaluate(_ctx(0)).allowed is True


class TestParseWindow:
    @pytest.mark.parametrize(
        "window,expected",
        [
            ("30s", timedelta(seconds=30)),
            ("15m", timedelta(minutes=15)),
            ("1h", timedelta(hours=1)),
            ("7d", timedelta(days=7)),
        ],
    )
    def test_units(self, window, expected):
        assert parse_window(window) == expected

    @pytest.mark.parametrize("window", ["", "1w", "h", "10 m", None, 60])
    def test_malformed_falls_back_to_one_hour(self, window):
        assert parse_window(window) == timedelta(hours=1)


class TestFrequencyPolicy:
    def test_counts_from_window_start(self):
        calls = []

        def counter(user_id, feature_key, window_start):
            calls.append((user_id, feature_key, window_start))
            return 2

        result = FrequencyPolicy(counter).evaluate(_ctx({"limit": 3, "window": "60s"}))

        assert result.allowed is True
        assert calls == [("user_alice", "feature", NOW - timedelta(seconds=60))]
        assert result.metadata == {"limit": 3, "used": 2, "remaining": 1, "window": "60s"}

    def test_denies_when_window_is_full(self):
        result = FrequencyPolicy(lambda *args: 3).evaluate(_ctx({"limit": 3, "window": "60s"}))
        assert result.allowed is False
        assert result.reason == "Rate limit exceeded: 3 per 60s"

    def test_window_defaults_to_one_hour(self):
        starts = []
        FrequencyPolicy(lambda u, f, start: starts.append(start) or 0).evaluate(_ctx({"limit": 1}))
        assert starts == [NOW - timedelta(hours=1)]


class TestPolicyRegistry:
    def test_every_type_has_a_policy(self):
        assert set(_BUILDERS) == set(EntitlementType)

    @pytest.mark.parametrize(
        "etype,policy_cls",
        [
            ("counter", FixedLimitPolicy),
            ("boolean", BooleanPolicy),
            ("frequency", FrequencyPolicy),
            ("level", LevelPolicy),
        ],
    )
    def test_policy_for_type(self, etype, policy_cls):
        assert isinstance(PolicyRegistry(lambda *a: 0).policy_for(etype), policy_cls)

    def test_unknown_type_raises(self):
        with pytest.raises(UnknownEntitlementTypeError):
            PolicyRegistry(lambda *a: 0).policy_for("quota")


def test_policy_result_to_dict_omits_empty_fields():
    assert PolicyResult.allow().to_dict() == {"allowed": True}
    assert PolicyResult.deny("nope", {"limit": 1}).to_dict() == {
        "allowed": False,
        "reason": "nope",
        "metadata": {"limit": 1},
    }
