"""
Tests for the job orchestrator.

Covers the job lifecycle end to end with real subprocesses: validation,
pre-flight checks, step sequencing, both timers, artifact verification and
exactly-once workspace cleanup.
"""

import asyncio
import base64
import dataclasses
import time

import pytest

from renderapi.executor import JobExecution, run_job
from renderapi.model import JobRequest, JobStatus


def make(request: dict, settings, log, **kwargs) -> JobExecution:
    return JobExecution(JobRequest.from_dict(request), settings=settings, log=log, **kwargs)


async def finished(execution: JobExecution) -> None:
    await asyncio.wait_for(execution.cleanup_done.wait(), 5)


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"pipeline": "echo hi"}, {"pipeline": []}, {"pipeline": {"cmd": "ls"}}])
    async def test_bad_pipeline_is_rejected_without_workspace(self, body, settings, log, workspace_root):
        execution = make(body, settings, log)
        result = await execution.run()

        assert result.status is JobStatus.FAILED
        assert result.http_status == 400
        payload = result.to_payload()
        assert payload["code"] == "validation_error"
        assert payload["jobId"] == execution.job_id
        assert not workspace_root.exists()
        assert execution.cleanup_done.is_set()
        assert log.events("job.rejected")

    @pytest.mark.asyncio
    async def test_binary_step_without_payload_fails_preflight(self, settings, log, workspace_root):
        execution = make(
            {"pipeline": ["echo first > marker", "WRITE_BINARY_TO:in.bin", "cp in.bin final_output.mp4"]},
            settings,
            log,
        )
        result = await execution.run()

        assert result.http_status == 400
        assert result.error.code == "validation_error"
        assert "WRITE_BINARY_TO" in result.error.message
        assert not workspace_root.exists()
        assert not log.events("step.started")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", [1234, "  \n", ["aGk="]])
    async def test_binary_step_with_non_text_payload_fails_preflight(self, data, settings, log, workspace_root):
        result = await make({"pipeline": ["WRITE_BINARY_TO:in.bin"], "binaryData": data}, settings, log).run()

        assert result.error.code == "validation_error"
        assert not workspace_root.exists()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("output_path", [123, ["out.mp4"], {"path": "out.mp4"}, True])
    async def test_non_string_output_path_is_rejected(self, output_path, settings, log, workspace_root):
        execution = make({"pipeline": ["echo x > final_output.mp4"], "output_path": output_path}, settings, log)
        result = await execution.run()

        assert result.status is JobStatus.FAILED
        assert result.http_status == 400
        assert result.error.code == "validation_error"
        assert "output_path" in result.error.message
        assert not workspace_root.exists()
        assert not log.events("step.started")


class TestSuccess:
    @pytest.mark.asyncio
    async def test_artifact_is_returned_then_released(self, settings, log):
        execution = make({"pipeline": ["printf rendered > final_output.mp4"]}, settings, log)
        result = await execution.run()

        assert result.ok
        assert result.http_status == 200
        assert result.size == len("rendered")
        assert result.artifact == execution.job.workspace / "final_output.mp4"
        # Nothing is removed until the caller has the bytes.
        assert execution.job.workspace.is_dir()

        chunks = [c async for c in execution.stream_artifact(chunk_size=3)]
        assert b"".join(chunks) == b"rendered"

        await finished(execution)
        assert not execution.job.workspace.exists()
        assert len(log.events("workspace.removed")) == 1
        assert log.events("artifact.sent")

    @pytest.mark.asyncio
    async def test_explicit_relative_output_path(self, settings, log):
        execution = make(
            {"pipeline": ["mkdir -p out && echo x > out/video.mp4"], "output_path": "out/video.mp4"},
            settings,
            log,
        )
        result = await execution.run()

        assert result.ok
        assert result.artifact == execution.job.workspace / "out" / "video.mp4"
        await execution.aclose()

    @pytest.mark.asyncio
    async def test_explicit_absolute_output_path(self, settings, log, tmp_path):
        target = tmp_path / "exports" / "video.mp4"
        execution = make(
            {"pipeline": [f"mkdir -p {target.parent} && echo x > {target}"], "output_path": str(target)},
            settings,
            log,
        )
        result = await execution.run()

        assert result.ok
        assert result.artifact == target
        await execution.aclose()
        assert not execution.job.workspace.exists()

    @pytest.mark.asyncio
    async def test_default_output_name_comes_from_settings(self, settings, log):
        custom = dataclasses.replace(settings, output_name="final_output")
        execution, result = await run_job(
            JobRequest(pipeline=["echo x > final_output"]),
            settings=custom,
            log=log,
        )
        assert result.ok
        assert result.artifact.name == "final_output"
        await execution.aclose()

    @pytest.mark.asyncio
    async def test_all_zero_exits_without_artifact(self, settings, log):
        execution = make({"pipeline": ["true", "echo done"]}, settings, log)
        result = await execution.run()

        assert result.status is JobStatus.FAILED
        assert result.error.code == "output_not_produced"
        assert result.to_payload()["expectedPath"].endswith("final_output.mp4")
        assert [s.ok for s in result.steps] == [True, True]
        await finished(execution)
        assert not execution.job.workspace.exists()


class TestSteps:
    @pytest.mark.asyncio
    async def test_steps_run_in_order_in_one_workspace(self, settings, log):
        execution = make(
            {"pipeline": ["echo 1 >> order", {"cmd": "echo 2 >> order"}, {"command": "echo 3 >> order"}, "cp order final_output.mp4"]},
            settings,
            log,
        )
        result = await execution.run()

        assert result.ok
        assert result.artifact.read_text() == "1\n2\n3\n"
        await execution.aclose()

    @pytest.mark.asyncio
    async def test_malformed_steps_are_skipped(self, settings, log):
        execution = make(
            {"pipeline": [{"name": "no command"}, 42, {"cmd": 5}, None, "echo ok > final_output.mp4"]},
            settings,
            log,
        )
        result = await execution.run()

        assert result.ok
        skipped = log.events("step.skipped")
        assert [r["step"] for r in skipped] == [1, 2, 3, 4]
        assert {r["code"] for r in skipped} == {"malformed_step"}
        await execution.aclose()

    @pytest.mark.asyncio
    async def test_failing_step_aborts_the_rest(self, settings, log):
        execution = make(
            {"pipeline": ["echo a", "echo 'codec not found' >&2; exit 1", "touch final_output.mp4"]},
            settings,
            log,
        )
        result = await execution.run()

        assert result.status is JobStatus.FAILED
        payload = result.to_payload()
        assert payload["code"] == "step_failed"
        assert payload["step"] == 2
        assert payload["error"] == "Pipeline failed at step 2"
        assert "codec not found" in payload["detail"]
        assert payload["exitCode"] == 1
        assert [r["step"] for r in log.events("step.started")] == [1, 2]

        await finished(execution)
        assert not execution.job.workspace.exists()

    @pytest.mark.asyncio
    async def test_empty_command_aborts(self, settings, log):
        result = await make({"pipeline": ["echo a", "   "]}, settings, log).run()

        assert result.error.code == "empty_command"
        assert result.error.step == 2

    @pytest.mark.asyncio
    async def test_step_timeout_kills_and_stops_pipeline(self, settings, log):
        fast = dataclasses.replace(settings, step_timeout=0.3, kill_grace=0.3)
        execution = make(
            {"pipeline": ["echo a", "trap '' TERM; sleep 30", "touch final_output.mp4"]},
            fast,
            log,
        )
        start = time.monotonic()
        result = await execution.run()

        assert time.monotonic() - start < 5
        assert result.error.code == "step_timeout"
        assert result.error.step == 2
        assert result.steps[-1].killed
        assert [r["step"] for r in log.events("step.started")] == [1, 2]
        await finished(execution)

    @pytest.mark.asyncio
    async def test_output_cap_is_a_step_failure(self, settings, log):
        small = dataclasses.replace(settings, max_output_bytes=1000)
        result = await make({"pipeline": ["head -c 100000 /dev/zero"]}, small, log).run()

        assert result.error.code == "output_too_large"
        assert result.error.step == 1


class TestBinaryInjection:
    @pytest.mark.asyncio
    async def test_round_trip(self, settings, log):
        raw = bytes(range(256)) * 16
        execution = make(
            {
                "pipeline": ["WRITE_BINARY_TO: media/input.bin", "cp media/input.bin final_output.mp4"],
                "binaryData": base64.b64encode(raw).decode(),
            },
            settings,
            log,
        )
        result = await execution.run()

        assert result.ok
        assert result.artifact.read_bytes() == raw
        assert log.events("binary.written")[0]["bytes"] == len(raw)
        await execution.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", ["abc", "Vy-wf_U8oF7ipL4HvMYJp-UQnh8P8Nne-XNI1UBR"])
    async def test_undecodable_payload_fails_at_its_step(self, data, settings, log):
        execution = make(
            {"pipeline": ["echo a > marker", "WRITE_BINARY_TO:in.bin", "cp in.bin final_output.mp4"], "binaryData": data},
            settings,
            log,
        )
        result = await execution.run()

        assert result.status is JobStatus.FAILED
        assert result.http_status == 500
        payload = result.to_payload()
        assert payload["code"] == "binary_injection_failed"
        assert payload["step"] == 2
        assert [r["step"] for r in log.events("step.started")] == [1, 2]
        assert not log.events("binary.written")
        await finished(execution)
        assert not execution.job.workspace.exists()

    @pytest.mark.asyncio
    async def test_payload_decoded_once_for_several_targets(self, settings, log):
        execution = make(
            {
                "pipeline": ["WRITE_BINARY_TO:a.bin", "WRITE_BINARY_TO:b.bin", "cat a.bin b.bin > final_output.mp4"],
                "binaryData": "aGVs\nbG8=",
            },
            settings,
            log,
        )
        result = await execution.run()

        assert result.ok
        assert result.artifact.read_bytes() == b"hellohello"
        await execution.aclose()

    @pytest.mark.asyncio
    async def test_target_outside_workspace(self, settings, log, tmp_path):
        target = tmp_path / "mounted" / "audio.mp3"
        execution = make(
            {
                "pipeline": [f"WRITE_BINARY_TO:{target}", f"cp {target} final_output.mp4"],
                "binaryData": base64.b64encode(b"ID3").decode(),
            },
            settings,
            log,
        )
        result = await execution.run()

        assert result.ok
        await execution.aclose()
        # Outside the workspace, so it survives cleanup.
        assert target.read_bytes() == b"ID3"

    @pytest.mark.asyncio
    async def test_write_failure_aborts(self, settings, log, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")
        execution = make(
            {
                "pipeline": ["echo a", f"WRITE_BINARY_TO:{blocker}/x.bin", "touch final_output.mp4"],
                "binaryData": base64.b64encode(b"x").decode(),
            },
            settings,
            log,
        )
        result = await execution.run()

        assert result.error.code == "binary_injection_failed"
        assert result.error.step == 2
        await finished(execution)
        assert not execution.job.workspace.exists()


class TestJobTimeout:
    @pytest.mark.asyncio
    async def test_job_timer_wins_over_step_timer(self, settings, log):
        slow = dataclasses.replace(settings, job_timeout=0.5, step_timeout=30)
        execution = make({"pipeline": ["echo a", "sleep 30", "touch final_output.mp4"]}, slow, log)
        start = time.monotonic()
        result = await execution.run()

        assert time.monotonic() - start < 5
        assert result.status is JobStatus.TIMED_OUT
        assert result.http_status == 504
        payload = result.to_payload()
        assert payload["code"] == "job_timeout"
        assert payload["timeoutMs"] == 500
        assert payload["step"] == 2
        await finished(execution)
        assert not execution.job.workspace.exists()


class TestIsolationAndCleanup:
    @pytest.mark.asyncio
    async def test_concurrent_identical_jobs_do_not_share_workspaces(self, settings, log):
        body = {"pipeline": ["echo mine > mine.txt", "sleep 0.2", "ls > listing", "pwd > final_output.mp4"]}
        a = make(body, settings, log)
        b = make(body, settings, log)

        ra, rb = await asyncio.gather(a.run(), b.run())

        assert ra.ok and rb.ok
        assert a.job.workspace != b.job.workspace
        assert ra.artifact.read_text().strip() == str(a.job.workspace)
        assert rb.artifact.read_text().strip() == str(b.job.workspace)
        for execution in (a, b):
            listing = (execution.job.workspace / "listing").read_text().split()
            assert listing == ["listing", "mine.txt"]

        await asyncio.gather(a.aclose(), b.aclose())
        assert not a.job.workspace.exists()
        assert not b.job.workspace.exists()

    @pytest.mark.asyncio
    async def test_cleanup_after_internal_error(self, settings, log):
        async def broken_spawn(command, cwd):
            raise RuntimeError("spawn exploded")

        execution = make({"pipeline": ["echo hi"]}, settings, log, spawn=broken_spawn)
        result = await execution.run()

        assert result.status is JobStatus.FAILED
        assert result.error.code == "internal_error"
        assert "spawn exploded" in result.error.detail
        assert log.events("job.crashed")
        await finished(execution)
        assert not execution.job.workspace.exists()

    @pytest.mark.asyncio
    async def test_cleanup_happens_once(self, settings, log):
        execution = make({"pipeline": ["echo x > final_output.mp4"]}, settings, log)
        await execution.run()

        first = execution.release()
        second = execution.release()
        assert first is second
        await execution.aclose()
        await execution.aclose()

        assert len(log.events("workspace.removed")) == 1

    @pytest.mark.asyncio
    async def test_cancelled_job_still_cleans_up(self, settings, log):
        execution = make({"pipeline": ["sleep 30"]}, settings, log)
        task = asyncio.create_task(execution.run())
        for _ in range(100):
            if log.events("step.started"):
                break
            await asyncio.sleep(0.02)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert execution.job.status is JobStatus.FAILED
        await finished(execution)
        assert not execution.job.workspace.exists()


class TestStateMachine:
    def test_terminal_states_are_final(self, settings, log):
        execution = make({"pipeline": ["true"]}, settings, log)
        execution._transition(JobStatus.RUNNING)
        execution._transition(JobStatus.SUCCEEDED)

        with pytest.raises(RuntimeError):
            execution._transition(JobStatus.RUNNING)
        with pytest.raises(RuntimeError):
            execution._transition(JobStatus.FAILED)

    def test_no_skipping_running(self, settings, log):
        execution = make({"pipeline": ["true"]}, settings, log)
        with pytest.raises(RuntimeError):
            execution._transition(JobStatus.SUCCEEDED)

    @pytest.mark.asyncio
    async def test_rejection_goes_straight_from_pending_to_failed(self, settings, log):
        """Pre-flight rejection never enters running, so no workspace is created."""
        execution = make({"pipeline": []}, settings, log)
        assert execution.job.status is JobStatus.PENDING

        result = await execution.run()

        assert result.status is JobStatus.FAILED
        assert not log.events("workspace.created")
