"""Tests for the orchestrator and launcher command lines."""

import os

import pandas as pd
import pytest

import orchestrate_recon_all
import run_recon_batch
from recon_batch_utils import CompletionLedger, ExecutionResult, JobLock, OrchestratorError


class StubExecutor:
    instances = []

    def __init__(self, raw_dir, raw_format, flags, logger, group=None, openmp=None, log_dir=None):
        self.group = group
        self.calls = []
        StubExecutor.instances.append(self)

    def __call__(self, job_name, subjects_dir):
        self.calls.append(job_name)
        return ExecutionResult(job_name != "bad", "recon-all exited with ERRORS")


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    StubExecutor.instances = []
    monkeypatch.setattr(orchestrate_recon_all, "ReconAllExecutor", StubExecutor)
    monkeypatch.setattr(
        orchestrate_recon_all, "verify_freesurfer_installation", lambda logger: None
    )
    monkeypatch.delenv("SUBJECTS_DIR", raising=False)
    subjects = tmp_path / "fs"
    subjects.mkdir()
    raw = tmp_path / "raw"
    raw.mkdir()
    for sub in ("sub01", "sub02"):
        (raw / sub).mkdir()
    return {"subjects": str(subjects), "raw": str(raw), "log": str(tmp_path / "run.log")}


def test_main_runs_batch_and_builds_subject_list(cli_env):
    rc = orchestrate_recon_all.main([
        "--subjects-dir", cli_env["subjects"], "--raw-dir", cli_env["raw"],
        "--log-file", cli_env["log"],
    ])

    assert rc == 0
    assert StubExecutor.instances[0].calls == ["sub01", "sub02"]
    with open(os.path.join(cli_env["subjects"], "subjects.txt")) as f:
        assert f.read() == "sub01\nsub02\n"
    ledger = CompletionLedger(os.path.join(cli_env["subjects"], "completed_subjects.txt"))
    assert ledger.completed_names() == {"sub01", "sub02"}


def test_main_subject_flag_and_group(cli_env):
    rc = orchestrate_recon_all.main([
        "--subjects-dir", cli_env["subjects"], "-s", "sub02", "-s", "sub02",
        "-g", "followup", "--log-file", cli_env["log"],
    ])

    assert rc == 0
    assert StubExecutor.instances[0].calls == ["sub02-followup"]
    assert not os.path.exists(os.path.join(cli_env["subjects"], "subjects.txt"))


def test_main_returns_one_when_a_subject_fails(cli_env):
    rc = orchestrate_recon_all.main([
        "--subjects-dir", cli_env["subjects"], "-s", "bad", "-s", "sub01",
        "--log-file", cli_env["log"],
    ])

    assert rc == 1
    assert StubExecutor.instances[0].calls == ["bad", "sub01"]


def test_main_warns_about_unknown_flags(cli_env):
    rc = orchestrate_recon_all.main([
        "--subjects-dir", cli_env["subjects"], "-s", "sub01",
        "--frobnicate", "--log-file", cli_env["log"],
    ])

    assert rc == 0
    with open(cli_env["log"]) as f:
        assert "Ignoring unknown argument: --frobnicate" in f.read()


def test_main_missing_subjects_dir_is_fatal(cli_env, tmp_path):
    rc = orchestrate_recon_all.main([
        "--subjects-dir", str(tmp_path / "nope"), "--log-file", cli_env["log"],
    ])

    assert rc == 1
    assert StubExecutor.instances == []
    with open(cli_env["log"]) as f:
        assert "Fatal: Subjects directory not found" in f.read()


def test_main_status_does_not_execute(cli_env):
    CompletionLedger(os.path.join(cli_env["subjects"], "completed_subjects.txt")).record("sub01", 5)

    rc = orchestrate_recon_all.main([
        "--subjects-dir", cli_env["subjects"], "--raw-dir", cli_env["raw"],
        "--status", "--log-file", cli_env["log"],
    ])

    assert rc == 0
    assert StubExecutor.instances == []
    with open(cli_env["log"]) as f:
        log_text = f.read()
    assert "complete" in log_text
    assert "pending" in log_text


def test_launcher_resolves_batch_from_forwarded_args(cli_env, logger):
    batch = run_recon_batch.resolve_batch(
        ["--subjects-dir", cli_env["subjects"], "--raw-dir", cli_env["raw"], "-g", "pre"],
        logger,
    )

    assert batch["job_names"] == ["sub01-pre", "sub02-pre"]
    assert batch["ledger"] == os.path.join(cli_env["subjects"], "completed_subjects.txt")
    assert batch["lock_dir"] == cli_env["subjects"]


def test_launcher_summary_csv(tmp_path, logger):
    ledger = CompletionLedger(str(tmp_path / "done.txt"))
    ledger.record("sub01", 90, user="alice")
    JobLock(str(tmp_path), "sub02").acquire(logger)
    summary = str(tmp_path / "out" / "summary.csv")

    run_recon_batch.write_summary_csv(
        ["sub01", "sub02", "sub03"], ledger.path, str(tmp_path), summary, logger
    )

    df = pd.read_csv(summary)
    assert list(df["job_name"]) == ["sub01", "sub02", "sub03"]
    assert list(df["status"]) == ["complete", "in_progress", "pending"]


def test_launcher_rejects_bad_instance_count(tmp_path):
    assert run_recon_batch.main([
        "--n-instances", "0", "--log-dir", str(tmp_path / "logs"),
    ]) == 1


@pytest.mark.parametrize("sub_id", ["..", "."])
def test_main_rejects_dot_subject(cli_env, sub_id):
    rc = orchestrate_recon_all.main([
        "--subjects-dir", cli_env["subjects"], "-s", "sub01", "-s", sub_id,
        "--log-file", cli_env["log"],
    ])

    assert rc == 1
    assert StubExecutor.instances == []
    with open(cli_env["log"]) as f:
        assert "Fatal: Invalid subject ID given with --subject" in f.read()


def test_main_rejects_dot_entry_in_subject_list(cli_env):
    with open(os.path.join(cli_env["subjects"], "subjects.txt"), "w") as f:
        f.write(".\nsub01\n")

    rc = orchestrate_recon_all.main([
        "--subjects-dir", cli_env["subjects"], "--log-file", cli_env["log"],
    ])

    assert rc == 1
    assert StubExecutor.instances == []


def test_launcher_rejects_dot_subject(cli_env, logger):
    with pytest.raises(OrchestratorError, match="Invalid subject ID"):
        run_recon_batch.resolve_batch(
            ["--subjects-dir", cli_env["subjects"], "-s", "."], logger
        )
