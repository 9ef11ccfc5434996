"""Several orchestrator instances working through one subject list at once."""

import os
import time
import logging
import multiprocessing

import pandas as pd
import pytest

import run_recon_batch
from orchestrate_recon_all import run_batch
from recon_batch_utils import ExecutionResult

SUBJECTS = [f"sub{i:02d}" for i in range(1, 13)]

needs_fork = pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(),
    reason="needs the fork start method",
)


def _append_line(path, text):
    fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o664)
    try:
        os.write(fd, (text + "\n").encode())
    finally:
        os.close(fd)


def _instance(workspace, runs_file, start):
    """One orchestrator instance; the callback logs each run and sleeps briefly."""
    logger = logging.getLogger(f"instance_{os.getpid()}")

    def execute(job_name, subjects_dir):
        _append_line(runs_file, job_name)
        time.sleep(0.05)
        return ExecutionResult(True, "")

    start.wait(timeout=30)
    run_batch(
        SUBJECTS, workspace["ledger"], workspace["lock_dir"], execute, logger,
        subjects_dir=workspace["subjects_dir"],
    )


def _lines(path):
    with open(path) as f:
        return [line.split()[0] for line in f if line.strip()]


@needs_fork
@pytest.mark.parametrize("n_instances", [2, 4])
def test_instances_run_each_subject_exactly_once(workspace, tmp_path, n_instances):
    ctx = multiprocessing.get_context("fork")
    runs_file = str(tmp_path / "runs.txt")
    start = ctx.Event()
    procs = [
        ctx.Process(target=_instance, args=(workspace, runs_file, start))
        for _ in range(n_instances)
    ]
    for p in procs:
        p.start()
    start.set()
    for p in procs:
        p.join(timeout=60)

    assert [p.exitcode for p in procs] == [0] * n_instances
    runs = _lines(runs_file)
    assert sorted(runs) == SUBJECTS
    assert sorted(_lines(workspace["ledger"])) == SUBJECTS
    assert not [n for n in os.listdir(workspace["lock_dir"]) if n.endswith(".lock")]


STUB_INSTANCE = """
import os
import sys

sys.path.insert(0, {package_dir!r})

from orchestrate_recon_all import build_parser, run_batch
from recon_batch_utils import ExecutionResult, setup_logging

args, _ = build_parser().parse_known_args(sys.argv[1:])
logger = setup_logging("stub_instance", log_file=args.log_file)
subjects_dir = args.subjects_dir


def execute(job_name, active_dir):
    with open(os.path.join(active_dir, "runs.txt"), "a") as f:
        f.write(job_name + "\\n")
    return ExecutionResult(True, "")


run_batch(
    args.subject, os.path.join(subjects_dir, "completed_subjects.txt"),
    subjects_dir, execute, logger, subjects_dir=subjects_dir,
)
"""


def test_launcher_runs_two_instances(tmp_path, monkeypatch):
    package_dir = os.path.dirname(os.path.abspath(run_recon_batch.__file__))
    stub = tmp_path / "stub_orchestrate.py"
    stub.write_text(STUB_INSTANCE.format(package_dir=package_dir))
    monkeypatch.setattr(run_recon_batch, "_ORCHESTRATE_SCRIPT", str(stub))
    monkeypatch.delenv("SUBJECTS_DIR", raising=False)

    subjects = tmp_path / "fs"
    subjects.mkdir()
    logs = tmp_path / "logs"
    summary = tmp_path / "summary.csv"
    subject_args = []
    for sub_id in SUBJECTS[:4]:
        subject_args += ["-s", sub_id]

    rc = run_recon_batch.main([
        "--n-instances", "2", "--log-dir", str(logs), "--stagger-seconds", "0",
        "--summary-file", str(summary), "--",
        "--subjects-dir", str(subjects),
    ] + subject_args)

    assert rc == 0
    assert os.path.isfile(logs / "instance_00.log")
    assert os.path.isfile(logs / "instance_01.log")
    assert sorted(_lines(subjects / "runs.txt")) == SUBJECTS[:4]
    df = pd.read_csv(summary)
    assert list(df["job_name"]) == SUBJECTS[:4]
    assert set(df["status"]) == {"complete"}


def test_launcher_reports_failed_instance(tmp_path, monkeypatch):
    stub = tmp_path / "failing_orchestrate.py"
    stub.write_text("import sys\nsys.exit(1)\n")
    monkeypatch.setattr(run_recon_batch, "_ORCHESTRATE_SCRIPT", str(stub))
    monkeypatch.delenv("SUBJECTS_DIR", raising=False)
    subjects = tmp_path / "fs"
    subjects.mkdir()

    rc = run_recon_batch.main([
        "--n-instances", "2", "--log-dir", str(tmp_path / "logs"),
        "--stagger-seconds", "0", "--",
        "--subjects-dir", str(subjects), "-s", "sub01",
    ])

    assert rc == 1
