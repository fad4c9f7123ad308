"""Unit tests for the Rollout Coordinator state machine."""

from __future__ import annotations

import threading

import pytest

from harborline.core.claims import ClaimKind, ClaimStore
from harborline.core.coordinator import HealthPolicy, RolloutCoordinator
from harborline.models.artifacts import PublishedTag
from harborline.models.rollout import RolloutErrorKind, RolloutState

OLD = "sha256:" + "0" * 64
NEW = "sha256:" + "1" * 64

S = RolloutState


@pytest.fixture
def policy() -> HealthPolicy:
    return HealthPolicy(
        timeout_seconds=10.0,
        max_attempts=3,
        initial_backoff_seconds=0.5,
        max_backoff_seconds=2.0,
    )


@pytest.fixture
def coordinator(compute, target_state, policy, clock) -> RolloutCoordinator:
    return RolloutCoordinator(
        compute,
        target_state,
        policy=policy,
        runtime_env={"PORT": "8080"},
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def tag() -> PublishedTag:
    return PublishedTag(registry_tag="development", digest=NEW)


@pytest.fixture
def deployed(target_state, compute):
    """dev-target already runs and has confirmed OLD."""
    target_state.confirm("dev-target", OLD)
    compute.running["dev-target"] = OLD


class TestHealthPolicy:
    def test_backoff_doubles_and_caps(self, policy: HealthPolicy):
        assert [policy.backoff(n) for n in range(1, 5)] == [0.5, 1.0, 2.0, 2.0]


class TestCommit:
    def test_healthy_rollout_commits(self, coordinator, dev_target, tag, target_state, compute, deployed):
        result = coordinator.rollout(dev_target, tag, run_id="hl-1")
        assert result.final_state == S.COMMITTED
        assert result.states == [S.PENDING, S.UPDATING, S.HEALTH_CHECKING, S.COMMITTED]
        assert result.previous_digest == OLD
        assert result.confirmed_digest == NEW
        assert target_state.current_digest("dev-target") == NEW
        assert compute.replaces_for("dev-target") == [NEW]

    def test_runtime_env_passed_to_replace(self, coordinator, dev_target, tag, compute):
        coordinator.rollout(dev_target, tag)
        assert compute.replace_calls[0][2] == {"PORT": "8080"}

    def test_first_deploy_commits(self, coordinator, dev_target, tag, target_state):
        result = coordinator.rollout(dev_target, tag)
        assert result.committed
        assert result.previous_digest == ""
        assert target_state.current_digest("dev-target") == NEW

    def test_eventually_healthy(self, coordinator, dev_target, tag, compute, clock):
        answers = iter([False, False, True])
        compute.health = lambda target: next(answers)
        result = coordinator.rollout(dev_target, tag)
        assert result.committed
        assert result.health_checks == 3
        assert clock.sleeps == [0.5, 1.0]

    def test_health_check_exception_counts_as_unhealthy(self, coordinator, dev_target, tag, compute):
        answers = iter([ConnectionError("refused"), True])

        def check_health(target):
            answer = next(answers)
            if isinstance(answer, Exception):
                raise answer
            return answer

        compute.health = check_health
        result = coordinator.rollout(dev_target, tag)
        assert result.committed
        assert result.health_checks == 2

    def test_same_digest_is_a_noop(self, coordinator, dev_target, target_state, compute):
        target_state.confirm("dev-target", NEW)
        result = coordinator.rollout(dev_target, PublishedTag(registry_tag="development", digest=NEW))
        assert result.final_state == S.COMMITTED
        assert result.states == [S.PENDING, S.COMMITTED]
        assert result.replace_calls == 0
        assert compute.replace_calls == []


class TestHealthGate:
    def test_unhealthy_digest_never_confirmed(self, coordinator, dev_target, tag, target_state, compute, deployed):
        compute.unhealthy_digests.add(NEW)
        seen: list[str] = []
        compute.on_replace = lambda name, digest: seen.append(target_state.current_digest(name))

        result = coordinator.rollout(dev_target, tag)

        assert result.final_state == S.ROLLED_BACK
        assert target_state.current_digest("dev-target") == OLD
        assert NEW not in seen

    def test_timeout_budget_bounds_polling(self, compute, target_state, dev_target, tag, clock):
        coordinator = RolloutCoordinator(
            compute,
            target_state,
            policy=HealthPolicy(
                timeout_seconds=3.0,
                max_attempts=100,
                initial_backoff_seconds=1.0,
                max_backoff_seconds=8.0,
            ),
            sleep=clock.sleep,
            clock=clock,
        )
        compute.always_unhealthy = True
        result = coordinator.rollout(dev_target, tag)
        # 1s + 2s exhaust the 3s budget on the forward rollout
        assert clock.sleeps[:2] == [1.0, 2.0]
        assert result.final_state == S.ROLLBACK_FAILED
        assert sum(clock.sleeps) <= 6.0


class TestRollback:
    def test_rollback_restores_previous_digest(self, coordinator, dev_target, tag, compute, deployed):
        compute.unhealthy_digests.add(NEW)
        result = coordinator.rollout(dev_target, tag)
        assert result.states == [
            S.PENDING, S.UPDATING, S.HEALTH_CHECKING, S.UNHEALTHY, S.ROLLING_BACK, S.ROLLED_BACK,
        ]
        assert result.error_kind == RolloutErrorKind.HEALTH_TIMEOUT
        assert result.rollback_attempts == 1
        assert compute.replaces_for("dev-target") == [NEW, OLD]
        assert compute.running["dev-target"] == OLD

    def test_rollback_attempted_exactly_once(self, coordinator, dev_target, tag, compute, target_state, deployed):
        compute.always_unhealthy = True
        result = coordinator.rollout(dev_target, tag)
        assert result.final_state == S.ROLLBACK_FAILED
        assert result.error_kind == RolloutErrorKind.ROLLBACK_FAILED
        assert result.rollback_attempts == 1
        assert result.needs_manual_intervention
        assert compute.replaces_for("dev-target") == [NEW, OLD]
        assert target_state.current_digest("dev-target") == OLD

    def test_first_deploy_rolls_back_to_platform_digest(
        self, coordinator, dev_target, tag, compute, target_state
    ):
        # Never confirmed here, but the platform already runs OLD.
        compute.running["dev-target"] = OLD
        compute.unhealthy_digests.add(NEW)
        result = coordinator.rollout(dev_target, tag)
        assert result.final_state == S.ROLLED_BACK
        assert result.rollback_attempts == 1
        assert result.rollback_digest == OLD
        assert compute.replaces_for("dev-target") == [NEW, OLD]
        assert compute.running["dev-target"] == OLD
        assert target_state.current_digest("dev-target") == ""

    def test_nothing_known_to_roll_back_to(self, coordinator, dev_target, tag, compute, target_state):
        compute.unhealthy_digests.add(NEW)
        result = coordinator.rollout(dev_target, tag)
        assert result.final_state == S.ROLLBACK_FAILED
        assert result.rollback_attempts == 0
        assert "no known earlier digest" in result.detail
        assert target_state.current_digest("dev-target") == ""

    def test_unreadable_platform_digest_cannot_roll_back(
        self, coordinator, dev_target, tag, compute
    ):
        def broken(target):
            raise RuntimeError("digest command exited 1")

        compute.current_digest = broken
        compute.unhealthy_digests.add(NEW)
        result = coordinator.rollout(dev_target, tag)
        assert result.final_state == S.ROLLBACK_FAILED
        assert compute.replaces_for("dev-target") == [NEW]

    def test_unacknowledged_replace(self, coordinator, dev_target, tag, compute, deployed):
        compute.ack = False
        result = coordinator.rollout(dev_target, tag)
        assert result.states[:3] == [S.PENDING, S.UPDATING, S.UNHEALTHY]
        assert result.final_state == S.ROLLBACK_FAILED
        assert "not acknowledged" in result.detail

    def test_replace_raising_is_update_failed(self, coordinator, dev_target, tag, compute, deployed):
        calls = {"n": 0}
        original = compute.replace

        def flaky(target, digest, env):
            calls["n"] += 1
            if calls["n"] == 1:
                raise TimeoutError("platform timeout")
            return original(target, digest, env)

        compute.replace = flaky
        result = coordinator.rollout(dev_target, tag)
        assert result.final_state == S.ROLLED_BACK
        assert result.error_kind == RolloutErrorKind.UPDATE_FAILED
        assert "platform timeout" in result.detail


class TestSerialization:
    def test_same_target_rollouts_do_not_overlap(self, compute, target_state, dev_target):
        coordinator = RolloutCoordinator(compute, target_state, sleep=lambda s: None)
        active = {"n": 0, "max": 0}
        lock = threading.Lock()
        gate = threading.Event()

        def health(target):
            with lock:
                active["n"] += 1
                active["max"] = max(active["max"], active["n"])
            gate.wait(0.05)
            with lock:
                active["n"] -= 1
            return True

        compute.health = health
        digests = ["sha256:" + c * 64 for c in "abcd"]
        threads = [
            threading.Thread(
                target=coordinator.rollout,
                args=(dev_target, PublishedTag(registry_tag="development", digest=d)),
            )
            for d in digests
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert active["max"] == 1
        assert target_state.current_digest("dev-target") in digests
        assert len(compute.replace_calls) == 4


class TestTargetClaims:
    @pytest.fixture
    def claims(self, tmp_dir, clock) -> ClaimStore:
        return ClaimStore(tmp_dir / "state.db", ttl_seconds=5.0, clock=clock)

    @pytest.fixture
    def claiming(self, compute, target_state, policy, claims, clock) -> RolloutCoordinator:
        return RolloutCoordinator(
            compute,
            target_state,
            policy=policy,
            claims=claims,
            claim_poll_seconds=1.0,
            sleep=clock.sleep,
            clock=clock,
        )

    def test_claim_released_after_rollout(self, claiming, claims, dev_target, tag):
        result = claiming.rollout(dev_target, tag, run_id="hl-1")
        assert result.committed
        assert claims.holder(ClaimKind.TARGET, "dev-target") is None

    def test_waits_for_target_held_elsewhere(
        self, compute, target_state, policy, claims, dev_target, tag, clock
    ):
        claims.claim(ClaimKind.TARGET, "dev-target", "hl-other")

        def sleep(seconds):
            clock.sleep(seconds)
            if len(clock.sleeps) == 2:
                claims.release(ClaimKind.TARGET, "dev-target", "hl-other")

        coordinator = RolloutCoordinator(
            compute,
            target_state,
            policy=policy,
            claims=claims,
            claim_poll_seconds=1.0,
            sleep=sleep,
            clock=clock,
        )
        result = coordinator.rollout(dev_target, tag, run_id="hl-1")
        assert result.committed
        assert clock.sleeps == [1.0, 1.0]
        assert compute.replaces_for("dev-target") == [NEW]

    def test_stale_target_claim_is_taken_over(self, claiming, claims, dev_target, tag, clock):
        claims.claim(ClaimKind.TARGET, "dev-target", "hl-crashed")
        result = claiming.rollout(dev_target, tag, run_id="hl-1")
        assert result.committed
        # Polled until the 5s claim went stale.
        assert clock.sleeps[:5] == [1.0] * 5
