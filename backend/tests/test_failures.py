"""Retry decisions, stall policy, artifact cleanup and progress merging."""

import pytest

from promopipe.errors import (
    ExternalServiceError,
    OperationFailedError,
    PermanentFailure,
    PollTimeoutError,
    StorageError,
    ValidationError,
)
from promopipe.orchestrator.failures import ArtifactLedger, FailureManager
from promopipe.orchestrator.progress import ProgressTracker, band_value
from promopipe.orchestrator.state import RunStage, can_transition
from promopipe.queue import BackoffPolicy, Job


def make_job(attempts_made=1, max_attempts=3, **kwargs) -> Job:
    return Job(
        queue="video-generation",
        name="clip",
        attempts_made=attempts_made,
        max_attempts=max_attempts,
        backoff=BackoffPolicy(base_delay=2.0, max_delay=60.0),
        **kwargs,
    )


class TestFailureManager:
    def setup_method(self):
        self.manager = FailureManager()

    def test_external_errors_retry_with_exponential_backoff(self):
        first = self.manager.decide(make_job(attempts_made=1), ExternalServiceError("503"))
        second = self.manager.decide(make_job(attempts_made=2), ExternalServiceError("503"))

        assert first.retry and first.delay == 4.0
        assert second.retry and second.delay == 8.0

    def test_attempts_are_capped(self):
        decision = self.manager.decide(make_job(attempts_made=3), ExternalServiceError("503"))
        assert not decision.retry
        assert "exhausted" in decision.reason

    def test_backoff_delay_is_capped(self):
        assert BackoffPolicy(base_delay=2.0, max_delay=10.0).delay_for(5) == 10.0

    @pytest.mark.parametrize("exc", [ValidationError("bad"), OperationFailedError("failed")])
    def test_non_retryable_errors(self, exc):
        assert not self.manager.decide(make_job(), exc).retry

    def test_unknown_errors_are_not_retried(self):
        decision = self.manager.decide(make_job(), KeyError("scene"))
        assert not decision.retry
        assert "unexpected" in decision.reason

    @pytest.mark.parametrize("exc_type", [PollTimeoutError, StorageError])
    def test_retry_once_errors(self, exc_type):
        job = make_job(max_attempts=5)
        assert self.manager.decide(job, exc_type("boom")).retry
        job.attempts_made += 1
        assert not self.manager.decide(job, exc_type("boom")).retry

    def test_single_retries_are_tracked_per_error_type(self):
        job = make_job(max_attempts=5)
        assert self.manager.decide(job, PollTimeoutError("slow")).retry
        assert self.manager.decide(job, StorageError("disk")).retry
        assert job.single_retries == ["PollTimeoutError", "StorageError"]

    def test_stall_is_requeued_once(self):
        assert self.manager.decide_stall(make_job(stall_count=1)).retry
        assert not self.manager.decide_stall(make_job(stall_count=2)).retry


class TestPermanentFailure:
    def test_wrap_preserves_type_and_message(self):
        failure = PermanentFailure.wrap(OperationFailedError("Clip 2 failed"), "generating_clips")
        assert failure.error_type == "OperationFailedError"
        assert failure.message == "Clip 2 failed"
        assert failure.stage == "generating_clips"
        assert str(failure) == "OperationFailedError: Clip 2 failed"

    def test_wrap_is_idempotent(self):
        failure = PermanentFailure("PollTimeoutError", "timed out")
        assert PermanentFailure.wrap(failure, "generating_music") is failure
        assert failure.stage == "generating_music"


class TestArtifactLedger:
    def test_cleanup_deletes_each_path_once(self, tmp_path):
        ledger = ArtifactLedger()
        clip = tmp_path / "run" / "clips" / "scene_0.mp4"
        clip.parent.mkdir(parents=True)
        clip.write_bytes(b"clip")
        ledger.record("run", clip)
        ledger.record("run", str(clip))
        ledger.record("run", tmp_path / "run" / "never-written.mp3")

        assert len(ledger.paths("run")) == 2
        handled = ledger.cleanup("run", tmp_path / "run")

        assert len(handled) == 2
        assert not clip.exists()
        assert not (tmp_path / "run").exists()
        assert ledger.deleted("run") == set(ledger.paths("run"))
        assert ledger.cleanup("run", tmp_path / "run") == []

    def test_cleanup_of_unknown_run_is_a_no_op(self):
        assert ArtifactLedger().cleanup("missing") == []

    def test_forget_drops_the_run(self, tmp_path):
        ledger = ArtifactLedger()
        clip = tmp_path / "scene_0.mp4"
        clip.write_bytes(b"clip")
        ledger.record("run", clip)
        ledger.record("other", tmp_path / "other.mp4")
        ledger.cleanup("run")

        ledger.forget("run")

        assert ledger.paths("run") == []
        assert ledger.deleted("run") == set()
        assert ledger.paths("other") == [tmp_path / "other.mp4"]
        ledger.forget("missing")


class TestRunStages:
    def test_forward_steps_only(self):
        assert can_transition(RunStage.QUEUED, RunStage.GENERATING_SCENES)
        assert can_transition(RunStage.GENERATING_CLIPS, RunStage.GENERATING_MUSIC)
        assert not can_transition(RunStage.QUEUED, RunStage.COMPILING)
        assert not can_transition(RunStage.COMPILING, RunStage.GENERATING_CLIPS)

    def test_failure_and_cancel_from_any_active_stage(self):
        assert can_transition(RunStage.UPLOADING, RunStage.FAILED)
        assert can_transition(RunStage.GENERATING_SCENES, RunStage.CANCELLED)

    def test_terminal_stages_are_final(self):
        for stage in (RunStage.COMPLETED, RunStage.FAILED, RunStage.CANCELLED):
            assert not can_transition(stage, RunStage.FAILED)
            assert not can_transition(stage, RunStage.CANCELLED)


class TestProgressTracker:
    def test_band_value(self):
        assert band_value(RunStage.GENERATING_SCENES, 0.5) == 10
        assert band_value(RunStage.GENERATING_CLIPS, 1.5) == 70
        assert band_value(RunStage.COMPILING, 0.0) == 85

    def test_stage_bands_and_clip_mean(self):
        tracker = ProgressTracker()
        assert tracker.enter(RunStage.GENERATING_SCENES) == 0
        assert tracker.update("scenes", 0.5) == 10

        tracker.set_clips([10, 10, 10])
        assert tracker.enter(RunStage.GENERATING_CLIPS) == 20
        assert tracker.update("clip", 1.0, index=0) == 36
        assert tracker.update("clip", 0.2, index=0) is None
        assert tracker.update("clip", 1.0, index=7) is None

    def test_music_progress_applies_once_its_stage_begins(self):
        tracker = ProgressTracker()
        tracker.set_clips([10, 10])
        tracker.enter(RunStage.GENERATING_CLIPS)

        assert tracker.update("music", 0.5) is None
        tracker.update("clip", 1.0, index=0)
        tracker.update("clip", 1.0, index=1)
        assert tracker.enter(RunStage.GENERATING_MUSIC) == 77

    def test_duration_weighting(self):
        tracker = ProgressTracker(weighting="duration")
        tracker.set_clips([5, 15])
        tracker.enter(RunStage.GENERATING_CLIPS)
        assert tracker.update("clip", 1.0, index=1) == 57

    def test_hundred_is_reserved_for_completion(self):
        tracker = ProgressTracker()
        tracker.enter(RunStage.COMPILING)
        assert tracker.update("compile", 1.0) == 95
        assert tracker.enter(RunStage.UPLOADING) == 95
        assert tracker.enter(RunStage.COMPLETED) == 100

    def test_stale_stage_updates_are_ignored(self):
        tracker = ProgressTracker()
        tracker.set_clips([10])
        tracker.enter(RunStage.GENERATING_CLIPS)
        assert tracker.update("scenes", 1.0) is None
        assert tracker.progress == 20
