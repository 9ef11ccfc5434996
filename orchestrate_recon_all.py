#!/usr/bin/env python3

# ============================================================================
# RESUMABLE BATCH ORCHESTRATOR FOR FREESURFER RECON-ALL
#
# Imports raw scans into a FreeSurfer subjects directory and runs recon-all
# for every subject in a subject list, one subject at a time.
#
# Safe to start several times over the same subject list (on one machine or
# on several nodes sharing the filesystem):
#   - subjects already in the completion ledger are skipped
#   - subjects whose lock file exists are skipped (another instance owns them)
#   - a lock is claimed with an atomic exclusive create, so two instances
#     never run the same subject at once
#   - only successful runs are written to the ledger; failed subjects stay
#     eligible for the next run
#
# Usage:
#   python orchestrate_recon_all.py --subjects-dir /data/fs \
#     --raw-dir /data/raw --raw-format dcm [--group pre] \
#     [--subject-list subjects.txt] [--local-run --tmp-dir /scratch] \
#     [--config batch.yaml] [--log-file logs/instance1.log]
#
# Exit codes:
#   0   - no subject failed in this instance
#   1   - configuration error, or one or more subjects failed
#
# Author: recon-batch-orchestrator contributors
# Version: 1.0
# Last updated: 10/19/26
# ============================================================================

import os
import sys
import time
import shutil
import signal
import argparse

from recon_batch_utils import (
    OrchestratorError,
    ExecutionResult,
    JobOutcome,
    CompletionLedger,
    JobLock,
    STATUS_EXECUTED,
    STATUS_FAILED,
    STATUS_SKIPPED_COMPLETE,
    STATUS_SKIPPED_IN_PROGRESS,
    RAW_FORMATS,
    setup_logging,
    format_elapsed,
    canonical_job_name,
    validate_subject_id,
    initialize_subject_list,
    load_batch_config,
    stage_working_copy,
    unstage_working_copy,
    verify_freesurfer_installation,
    find_raw_inputs,
    import_subject,
    run_recon_all,
    summarize_batch_status,
)


def run_batch(sub_ids, ledger_path, lock_dir, execute, logger, group=None,
              local_run=False, subjects_dir=None, tmp_dir=None, stale_lock_hours=None):
    """
    Process every subject in sub_ids at most once across all instances.

    Each subject ends in exactly one state: executed, failed,
    skipped_complete or skipped_in_progress. Subjects are attempted in list
    order and strictly one at a time; this instance never waits on another.

    Parameters
    ----------
    sub_ids : list of str
        Subject IDs (read once; not modified).
    ledger_path : str
        Completion ledger. Created if missing.
    lock_dir : str
        Directory holding one lock file per job.
    execute : callable
        execute(job_name, subjects_dir) -> ExecutionResult. Exceptions are
        treated as a failed result.
    logger : logging.Logger
    group : str or None
        Tag appended to every subject ID ("<sub_id>-<group>") to form the job
        name used for locks, ledger and execution.
    local_run : bool
        If True, stage each subject into tmp_dir for the run and copy the
        results back to subjects_dir afterwards.
    subjects_dir : str or None
        Canonical FreeSurfer subjects directory passed to execute().
    tmp_dir : str or None
        Local temporary subjects directory (local_run only).
    stale_lock_hours : float or None
        If set, locks older than this are reclaimed.

    Returns
    -------
    list of JobOutcome
    """
    if local_run and (not subjects_dir or not tmp_dir):
        raise OrchestratorError("local_run requires both subjects_dir and tmp_dir.")

    # Reject bad IDs before any lock, ledger or working copy is touched
    job_names = [canonical_job_name(sub_id, group) for sub_id in sub_ids]

    batch_start = time.time()
    ledger = CompletionLedger(ledger_path)
    ledger.ensure_exists(logger)

    outcomes = []
    for sub_id, job_name in zip(sub_ids, job_names):
        if ledger.contains(job_name):
            logger.info("%s: already complete - skipping.", job_name)
            outcomes.append(
                JobOutcome(sub_id, job_name, STATUS_SKIPPED_COMPLETE, 0.0, "")
            )
            continue

        lock = JobLock(lock_dir, job_name, stale_after_hours=stale_lock_hours)
        if not lock.acquire(logger):
            logger.info(
                "%s: locked by another instance (%s) - skipping.", job_name, lock.path
            )
            outcomes.append(
                JobOutcome(sub_id, job_name, STATUS_SKIPPED_IN_PROGRESS, 0.0, "")
            )
            continue

        with lock:
            # Another instance may have finished it between the check and the claim
            if ledger.contains(job_name):
                logger.info("%s: completed elsewhere while claiming - skipping.", job_name)
                outcomes.append(
                    JobOutcome(sub_id, job_name, STATUS_SKIPPED_COMPLETE, 0.0, "")
                )
                continue

            outcomes.append(_run_claimed_job(
                sub_id, job_name, ledger, execute, logger,
                local_run=local_run, subjects_dir=subjects_dir, tmp_dir=tmp_dir,
            ))

    _log_batch_summary(outcomes, time.time() - batch_start, logger)
    return outcomes


def _run_claimed_job(sub_id, job_name, ledger, execute, logger,
                     local_run, subjects_dir, tmp_dir):
    """Stage, execute, unstage and record one job whose lock this instance holds."""
    logger.info("=" * 60)
    logger.info("STARTING: %s", job_name)
    logger.info("=" * 60)

    job_start = time.time()
    staged = False
    try:
        active_dir = subjects_dir
        if local_run:
            stage_working_copy(subjects_dir, tmp_dir, job_name, logger)
            staged = True
            active_dir = tmp_dir

        try:
            result = execute(job_name, active_dir)
        except Exception as e:
            logger.error("Unexpected error while running %s: %s", job_name, e, exc_info=True)
            result = ExecutionResult(False, str(e))

    except OSError as e:
        logger.error("Could not stage %s into %s: %s", job_name, tmp_dir, e)
        partial = os.path.join(tmp_dir, job_name)
        if os.path.isdir(partial):
            shutil.rmtree(partial, ignore_errors=True)
        result = ExecutionResult(False, f"Staging failed: {e}")

    finally:
        if staged:
            try:
                unstage_working_copy(subjects_dir, tmp_dir, job_name, logger)
            except OSError as e:
                logger.error("Could not copy %s back from %s: %s", job_name, tmp_dir, e)
                result = ExecutionResult(False, f"Unstaging failed: {e}")

    elapsed = time.time() - job_start

    if not result.success:
        logger.error(
            "%s FAILED after %s: %s (not recorded; will be retried next run)",
            job_name, format_elapsed(elapsed), result.reason
        )
        return JobOutcome(sub_id, job_name, STATUS_FAILED, elapsed, result.reason)

    if ledger.record(job_name, elapsed):
        logger.info("%s completed in %s", job_name, format_elapsed(elapsed))
    else:
        logger.warning("%s completed but was already in the ledger.", job_name)
    return JobOutcome(sub_id, job_name, STATUS_EXECUTED, elapsed, "")


def _log_batch_summary(outcomes, elapsed, logger):
    counts = {
        STATUS_EXECUTED: 0,
        STATUS_FAILED: 0,
        STATUS_SKIPPED_COMPLETE: 0,
        STATUS_SKIPPED_IN_PROGRESS: 0,
    }
    for outcome in outcomes:
        counts[outcome.status] += 1

    logger.info("=" * 60)
    logger.info(
        "Batch finished: %d executed, %d failed, %d already complete, "
        "%d in progress elsewhere (%d subject(s))",
        counts[STATUS_EXECUTED], counts[STATUS_FAILED],
        counts[STATUS_SKIPPED_COMPLETE], counts[STATUS_SKIPPED_IN_PROGRESS],
        len(outcomes),
    )
    for outcome in outcomes:
        if outcome.status == STATUS_FAILED:
            logger.info("  FAILED %s: %s", outcome.job_name, outcome.reason)
    logger.info("Total batch time: %s", format_elapsed(elapsed))
    logger.info("=" * 60)


class ReconAllExecutor:
    """
    Execution callback: import raw data if needed, then run recon-all.

    Called by run_batch with the job name and the subjects directory to work
    in (the canonical one, or the local working directory in local-run mode).
    """

    def __init__(self, raw_dir, raw_format, flags, logger, group=None,
                 openmp=None, log_dir=None):
        self.raw_dir = raw_dir
        self.raw_format = raw_format
        self.flags = list(flags)
        self.logger = logger
        self.group = group
        self.openmp = openmp
        self.log_dir = log_dir

    def subject_for(self, job_name):
        if self.group and job_name.endswith("-" + self.group):
            return job_name[: -(len(self.group) + 1)]
        return job_name

    def __call__(self, job_name, subjects_dir):
        subject_path = os.path.join(subjects_dir, job_name)
        if not os.path.isdir(os.path.join(subject_path, "mri", "orig")):
            if not self.raw_dir:
                return ExecutionResult(
                    False, f"{job_name} has not been imported and no raw-data directory was given"
                )
            try:
                inputs = find_raw_inputs(self.raw_dir, self.subject_for(job_name), self.raw_format)
                import_subject(subjects_dir, job_name, inputs, self.logger)
            except OrchestratorError as e:
                return ExecutionResult(False, str(e))

        log_path = None
        if self.log_dir:
            log_path = os.path.join(self.log_dir, f"{job_name}_recon-all.log")

        return run_recon_all(
            subjects_dir, job_name, self.flags, self.logger,
            log_path=log_path, openmp=self.openmp,
        )


def _raise_system_exit(signum, frame):
    # Turns SIGTERM into SystemExit so held locks are released on the way out
    raise SystemExit(128 + signum)


def build_parser():
    parser = argparse.ArgumentParser(
        description="Resumable, lock-coordinated FreeSurfer recon-all batch.",
        allow_abbrev=False,
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="Optional YAML batch configuration file."
    )
    parser.add_argument(
        "--subjects-dir", type=str, default=None,
        help="FreeSurfer subjects directory (default: $SUBJECTS_DIR)."
    )
    parser.add_argument(
        "-s", "--subject", action="append", default=None,
        help="Process only this subject ID (repeatable). Overrides the subject list."
    )
    parser.add_argument(
        "-g", "--group", type=str, default=None,
        help="Group tag appended to every subject ID as '<id>-<group>'."
    )
    parser.add_argument(
        "--raw-dir", type=str, default=None,
        help="Directory with one raw-data entry per subject."
    )
    parser.add_argument(
        "--raw-format", type=str, default=None, choices=RAW_FORMATS,
        help="Format of the raw images (default: dcm)."
    )
    parser.add_argument(
        "--subject-list", type=str, default=None,
        help="Subject list filename, relative to the subjects directory "
             "(default: subjects.txt). Created from --raw-dir if missing."
    )
    parser.add_argument(
        "--ledger", type=str, default=None,
        help="Completion ledger filename, relative to the subjects directory "
             "(default: completed_subjects.txt)."
    )
    parser.add_argument(
        "--local-run", action="store_true", default=None,
        help="Run each subject in a local temporary directory and copy the "
             "results back when done."
    )
    parser.add_argument(
        "--tmp-dir", type=str, default=None,
        help="Temporary directory for --local-run (default: $TMPDIR or /tmp)."
    )
    parser.add_argument(
        "--stale-lock-hours", type=float, default=None,
        help="Reclaim lock files older than this many hours."
    )
    parser.add_argument(
        "--recon-log-dir", type=str, default=None,
        help="Directory for per-subject recon-all output logs."
    )
    parser.add_argument(
        "--status", action="store_true",
        help="Print the status of every subject and exit without processing."
    )
    parser.add_argument(
        "--log-file", type=str, default=None,
        help="Optional path to a log file."
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging."
    )
    return parser


def main(argv=None):
    parser = build_parser()
    args, unknown = parser.parse_known_args(argv)

    logger = setup_logging("orchestrate_recon_all", log_file=args.log_file, verbose=args.verbose)
    for flag in unknown:
        logger.warning("Ignoring unknown argument: %s", flag)

    signal.signal(signal.SIGTERM, _raise_system_exit)

    start_time = time.time()
    logger.info("=" * 60)
    logger.info("FreeSurfer recon-all Batch Orchestrator")
    logger.info("PID: %d", os.getpid())
    logger.info("=" * 60)

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
        "locks": {"stale_after_hours": args.stale_lock_hours},
        "logging": {"log_dir": args.recon_log_dir},
    }

    try:
        config = load_batch_config(args.config, overrides, logger)
        study = config["study"]

        logger.info("Subjects dir : %s", study["subjects_dir"])
        logger.info("Raw dir      : %s", study["raw_dir"])
        logger.info("Ledger       : %s", study["ledger"])
        logger.info("Lock dir     : %s", study["lock_dir"])
        if study["group"]:
            logger.info("Group        : %s", study["group"])
        if config["local_run"]["enabled"]:
            logger.info("Local run    : %s", config["local_run"]["tmp_dir"])

        if args.subject:
            sub_ids = list(dict.fromkeys(
                validate_subject_id(s, "given with --subject") for s in args.subject
            ))
        else:
            sub_ids = initialize_subject_list(study["subject_list"], study["raw_dir"], logger)

        if not sub_ids:
            raise OrchestratorError("Subject list is empty (no valid entries found).")

        if args.status:
            job_names = [canonical_job_name(s, study["group"]) for s in sub_ids]
            status = summarize_batch_status(job_names, study["ledger"], study["lock_dir"])
            logger.info("Status of %d subject(s):\n%s", len(status), status.to_string(index=False))
            return 0

        verify_freesurfer_installation(logger)

        executor = ReconAllExecutor(
            study["raw_dir"], study["raw_format"], config["recon_all"]["flags"], logger,
            group=study["group"],
            openmp=config["recon_all"]["openmp"],
            log_dir=config["logging"]["log_dir"],
        )

        outcomes = run_batch(
            sub_ids, study["ledger"], study["lock_dir"], executor, logger,
            group=study["group"],
            local_run=config["local_run"]["enabled"],
            subjects_dir=study["subjects_dir"],
            tmp_dir=config["local_run"]["tmp_dir"],
            stale_lock_hours=config["locks"]["stale_after_hours"],
        )

    except OrchestratorError as e:
        logger.error("Fatal: %s", e)
        return 1

    logger.info("Total runtime: %.2f seconds", time.time() - start_time)
    return 1 if any(o.status == STATUS_FAILED for o in outcomes) else 0


if __name__ == "__main__":
    sys.exit(main())
