#!/usr/bin/env python3

# ============================================================================
# PARALLEL LAUNCHER FOR THE RECON-ALL BATCH ORCHESTRATOR
#
# Starts N independent orchestrate_recon_all.py processes over the same
# subject list. The instances share nothing but the filesystem: each one
# claims subjects through lock files and records completions in the shared
# ledger, so together they work through the list without duplicating a
# subject. Progress is shown as a rolling status line updated every 2
# seconds. A summary CSV with the status of every subject is written when
# all instances have exited (or on Ctrl+C).
#
# Usage:
#   python run_recon_batch.py --n-instances 4 --log-dir logs/ \
#     [--summary-file summary.csv] [--stagger-seconds 5] \
#     -- --subjects-dir /data/fs --raw-dir /data/raw [orchestrator flags...]
#
# Every argument this launcher does not recognise is forwarded unchanged to
# each orchestrate_recon_all.py instance.
#
# Exit codes:
#   0   - every instance exited 0
#   1   - one or more instances reported failures
#   130 - interrupted by Ctrl+C
#
# Author: recon-batch-orchestrator contributors
# Version: 1.0
# Last updated: 10/19/26
# ============================================================================

import os
import sys
import time
import argparse
import threading
import subprocess
from datetime import datetime
from concurrent.futures import ThreadPoolExecutor, as_completed

from recon_batch_utils import (
    OrchestratorError,
    CompletionLedger,
    setup_logging,
    canonical_job_name,
    validate_subject_id,
    initialize_subject_list,
    load_batch_config,
    summarize_batch_status,
)
from orchestrate_recon_all import build_parser as build_orchestrator_parser

# ---------------------------------------------------------------------------
# Module-level path resolution (validated before any instance is launched)
# ---------------------------------------------------------------------------
_THIS_DIR = os.path.dirname(os.path.abspath(__file__))
_ORCHESTRATE_SCRIPT = os.path.join(_THIS_DIR, "orchestrate_recon_all.py")


# ============================================================================
# Batch resolution
# ============================================================================

def resolve_batch(forwarded_args, logger):
    """
    Resolve the subject list and shared paths the instances will use.

    Parses the forwarded orchestrator arguments the same way each instance
    will, so the launcher knows which ledger and lock directory to report on.
    Creating the subject list here (when it is built from the raw-data
    directory) also keeps instances from racing to write it.

    Returns
    -------
    dict
        Keys: job_names, ledger, lock_dir.
    """
    args, _ = build_orchestrator_parser().parse_known_args(forwarded_args)
    overrides = {
        "study": {
            "subjects_dir": args.subjects_dir,
            "raw_dir": args.raw_dir,
            "raw_format": args.raw_format,
            "subject_list": args.subject_list,
            "ledger": args.ledger,
            "group": args.group,
        },
        "local_run": {"enabled": args.local_run, "tmp_dir": args.tmp_dir},
    }
    config = load_batch_config(args.config, overrides, logger)
    study = config["study"]

    if args.subject:
        sub_ids = list(dict.fromkeys(
            validate_subject_id(s, "given with --subject") for s in args.subject
        ))
    else:
        sub_ids = initialize_subject_list(study["subject_list"], study["raw_dir"], logger)

    return {
        "job_names": [canonical_job_name(s, study["group"]) for s in sub_ids],
        "ledger": study["ledger"],
        "lock_dir": study["lock_dir"],
    }


# ============================================================================
# Per-instance worker
# ============================================================================

def _run_instance(index, forwarded_args, log_dir, stagger_seconds, state, lock, cancel_event):
    """
    Run one orchestrate_recon_all.py instance in a subprocess.

    Instance i waits i * stagger_seconds before starting so the instances do
    not all race for the first subject at the same moment.

    Returns
    -------
    tuple of (str, float, int, str)
        (status, runtime_seconds, return_code, log_file)
        status is one of "success", "failed", "cancelled".
    """
    log_file = os.path.join(log_dir, f"instance_{index:02d}.log")

    if cancel_event.wait(timeout=index * stagger_seconds):
        return "cancelled", 0.0, -1, log_file

    with lock:
        state["running"].add(index)

    t0 = time.time()
    try:
        cmd = [
            sys.executable, _ORCHESTRATE_SCRIPT,
            "--log-file", log_file,
        ] + forwarded_args

        result = subprocess.run(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        runtime = time.time() - t0

        with lock:
            if result.returncode == 0:
                state["n_success"] += 1
            else:
                state["n_failed"] += 1
        status = "success" if result.returncode == 0 else "failed"
        return status, runtime, result.returncode, log_file

    except OSError:
        with lock:
            state["n_failed"] += 1
        return "failed", time.time() - t0, -1, log_file

    finally:
        with lock:
            state["running"].discard(index)


# ============================================================================
# Progress display
# ============================================================================

def _progress_loop(state, lock, n_instances, job_names, ledger_path, stop_event):
    """
    Daemon thread that prints a rolling progress line every 2 seconds.

    Completed subjects are counted from the shared ledger, so work done by
    instances outside this launcher is included.
    """
    ledger = CompletionLedger(ledger_path)
    wanted = set(job_names)

    while not stop_event.is_set():
        with lock:
            n_running = len(state["running"])
            ns = state["n_success"]
            nf = state["n_failed"]

        try:
            n_complete = len(wanted & ledger.completed_names())
        except OSError:
            n_complete = -1

        line = (
            f"\rSubjects complete: {n_complete}/{len(wanted)} | "
            f"Instances: {n_running} running, {ns} finished, {nf} with failures "
            f"(of {n_instances})"
        )
        sys.stdout.write(line[:120])
        sys.stdout.flush()

        stop_event.wait(timeout=2.0)

    sys.stdout.write("\n")
    sys.stdout.flush()


# ============================================================================
# Summary CSV
# ============================================================================

def write_summary_csv(job_names, ledger_path, lock_dir, summary_file, logger):
    """Write the per-subject status table to a CSV file."""
    os.makedirs(os.path.dirname(os.path.abspath(summary_file)), exist_ok=True)
    status = summarize_batch_status(job_names, ledger_path, lock_dir)
    status.to_csv(summary_file, index=False)
    logger.info("Summary CSV written: %s", summary_file)
    return status


# ============================================================================
# Main
# ============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Launch several recon-all batch orchestrator instances in parallel.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
        epilog="""
Examples:
  # Four instances over the subject list in $SUBJECTS_DIR/subjects.txt
  python run_recon_batch.py --n-instances 4 --log-dir logs/ -- \\
    --subjects-dir /data/fs --raw-dir /data/raw

  # Two instances, each working in local scratch space
  python run_recon_batch.py --n-instances 2 --log-dir logs/ -- \\
    --subjects-dir /data/fs --local-run --tmp-dir /scratch
        """,
    )
    parser.add_argument(
        "--n-instances", type=int, default=1,
        help="Number of orchestrator instances to run in parallel (default: 1).",
    )
    parser.add_argument(
        "--log-dir", required=True,
        help="Directory for per-instance log files.",
    )
    parser.add_argument(
        "--stagger-seconds", type=float, default=5.0,
        help="Delay between instance starts (default: 5).",
    )
    parser.add_argument(
        "--summary-file", default=None,
        help=(
            "Path to the output summary CSV. "
            "Defaults to {log_dir}/recon_summary_{YYYYMMDD_HHMMSS}.csv"
        ),
    )
    args, forwarded = parser.parse_known_args(argv)
    if forwarded and forwarded[0] == "--":
        forwarded = forwarded[1:]

    os.makedirs(args.log_dir, exist_ok=True)
    logger = setup_logging(
        "run_recon_batch", log_file=os.path.join(args.log_dir, "launcher.log")
    )

    # ------------------------------------------------------------------
    # Pre-flight checks
    # ------------------------------------------------------------------
    if not os.path.isfile(_ORCHESTRATE_SCRIPT):
        logger.error("orchestrate_recon_all.py not found: %s", _ORCHESTRATE_SCRIPT)
        return 1

    if args.n_instances < 1:
        logger.error("--n-instances must be at least 1, got %d", args.n_instances)
        return 1

    if args.summary_file is None:
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        args.summary_file = os.path.join(args.log_dir, f"recon_summary_{ts}.csv")

    try:
        batch = resolve_batch(forwarded, logger)
    except OrchestratorError as e:
        logger.error("Fatal: %s", e)
        return 1

    if not batch["job_names"]:
        logger.error("Subject list is empty (no valid entries found).")
        return 1

    logger.info("Subjects    : %d", len(batch["job_names"]))
    logger.info("Instances   : %d", args.n_instances)
    logger.info("Ledger      : %s", batch["ledger"])
    logger.info("Log dir     : %s", args.log_dir)
    logger.info("Summary     : %s", args.summary_file)

    # ------------------------------------------------------------------
    # Shared state
    # ------------------------------------------------------------------
    state = {"running": set(), "n_success": 0, "n_failed": 0}
    lock = threading.Lock()
    cancel_event = threading.Event()
    stop_event = threading.Event()

    progress_thread = threading.Thread(
        target=_progress_loop,
        args=(state, lock, args.n_instances, batch["job_names"], batch["ledger"], stop_event),
        daemon=True,
    )
    progress_thread.start()

    # ------------------------------------------------------------------
    # Parallel execution
    # ------------------------------------------------------------------
    exit_code = 0
    interrupted = False
    executor = ThreadPoolExecutor(max_workers=args.n_instances)

    try:
        futures = [
            executor.submit(
                _run_instance,
                i, forwarded, args.log_dir, args.stagger_seconds,
                state, lock, cancel_event,
            )
            for i in range(args.n_instances)
        ]
        for future in as_completed(futures):
            status, runtime, returncode, log_file = future.result()
            if status != "success":
                exit_code = 1
            logger.debug(
                "Instance finished: %s (rc=%d, %.1f s) log=%s",
                status, returncode, runtime, log_file
            )
        executor.shutdown(wait=True)

    except KeyboardInterrupt:
        interrupted = True
        logger.warning(
            "Interrupted (Ctrl+C) - cancelling instances that have not started, "
            "waiting for running instances to exit..."
        )
        cancel_event.set()
        # Running instances receive the same SIGINT from the terminal
        executor.shutdown(wait=True)

    finally:
        stop_event.set()
        progress_thread.join(timeout=3.0)

    # ------------------------------------------------------------------
    # Write summary CSV (always, even on interrupt)
    # ------------------------------------------------------------------
    status = write_summary_csv(
        batch["job_names"], batch["ledger"], batch["lock_dir"], args.summary_file, logger
    )
    counts = status["status"].value_counts()
    logger.info(
        "Batch status: %d complete, %d in progress, %d pending",
        counts.get("complete", 0), counts.get("in_progress", 0), counts.get("pending", 0)
    )

    if interrupted:
        return 130
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
